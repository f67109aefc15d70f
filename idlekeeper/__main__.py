"""
Entry point for running idlekeeper via `python -m idlekeeper`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config


def main():
    """Run the idlekeeper server."""
    uvicorn.run(
        "idlekeeper.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
