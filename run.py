"""Run the idlekeeper service."""

import uvicorn

from idlekeeper.config import config

if __name__ == "__main__":
    uvicorn.run(
        "idlekeeper.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
