"""
idlekeeper - Keeps an HTTP backend process alive only while it is in use.

Forwards requests to a supervised backend, wakes it on demand, and watches
its event stream to decide when it has gone idle and can be put to sleep.
"""

__version__ = "0.1.0"
