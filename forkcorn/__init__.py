"""
forkcorn — A small pre-fork WSGI server.

Inspired by Gunicorn, forkcorn binds one listening socket, forks N workers
that accept on it, and serves any PEP 3333 compliant WSGI application
(Flask, Django, ...) one request per connection, with graceful shutdown.
"""

__version__ = "0.1.0"
__all__ = [
    "serve",
    "run",
    "Config",
    "Supervisor",
    "ForkcornError",
    "MalformedRequest",
    "TruncatedRead",
    "ApplicationError",
    "ListenerClosed",
]

from forkcorn.config import Config
from forkcorn.errors import (
    ForkcornError,
    MalformedRequest,
    TruncatedRead,
    ApplicationError,
    ListenerClosed,
)
from forkcorn.supervisor import Supervisor, serve, run
