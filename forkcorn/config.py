"""
forkcorn/config.py — Server configuration.

Values come from (highest priority first) CLI flags, ``FORKCORN_*``
environment variables, then the defaults below.
"""

import os
import logging
from dataclasses import dataclass, fields
from typing import Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
BACKLOG = 128                       # pending-connection queue depth
MAX_HEADER_SIZE = 64 * 1024         # 64 KB — reject oversized headers
MAX_BODY_SIZE = 1 * 1024 * 1024     # 1 MB — reject oversized bodies
RECV_TIMEOUT = 10.0                 # seconds before recv times out (408)
RECV_CHUNK = 8192                   # bytes per recv call
GRACEFUL_TIMEOUT = 30.0             # seconds workers get to drain on shutdown

WORKER_TYPES = ("process", "thread")

# Valid log level names (for CLI validation)
LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# environment variable -> (field name, converter)
_ENV_VARS = {
    "FORKCORN_HOST": ("host", str),
    "FORKCORN_PORT": ("port", int),
    "FORKCORN_BACKLOG": ("backlog", int),
    "FORKCORN_WORKERS": ("workers", int),
    "FORKCORN_THREADS": ("threads", int),
    "FORKCORN_WORKER_TYPE": ("worker_type", str),
    "FORKCORN_GRACEFUL_TIMEOUT": ("graceful_timeout", float),
    "FORKCORN_LOG_LEVEL": ("log_level", str),
}


@dataclass
class Config:
    """
    Configuration for one forkcorn server.

    NETWORK
        host, port, backlog
    WORKERS
        workers      number of worker units sharing the listening socket
        worker_type  "process" (forked, true parallelism) or "thread"
        threads      0 handles connections one at a time inside a worker,
                     N > 0 hands each connection to a thread (N in flight)
    LIMITS
        recv_timeout, max_header_size, max_body_size, recv_chunk
    SHUTDOWN
        graceful_timeout  how long workers get to finish in-flight work
        replace_workers   respawn a worker that exits unexpectedly
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    backlog: int = BACKLOG
    workers: int = 1
    worker_type: str = "process"
    threads: int = 0
    graceful_timeout: float = GRACEFUL_TIMEOUT
    recv_timeout: Optional[float] = RECV_TIMEOUT
    max_header_size: int = MAX_HEADER_SIZE
    max_body_size: int = MAX_BODY_SIZE
    recv_chunk: int = RECV_CHUNK
    replace_workers: bool = False
    log_level: str = "info"

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "Config":
        """
        Build a config from ``FORKCORN_*`` environment variables.

        Keyword overrides win over the environment; ``None`` overrides are
        ignored so argparse defaults can be passed straight through.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for var, (name, convert) in _ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[name] = convert(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {var}: {raw!r}") from None
        known = {f.name for f in fields(cls)}
        for name, value in overrides.items():
            if name not in known:
                raise TypeError(f"Unknown config option: {name!r}")
            if value is not None:
                values[name] = value
        return cls(**values)

    @property
    def log_level_number(self) -> int:
        return LOG_LEVELS[self.log_level.lower()]

    def validate(self) -> "Config":
        """Fail fast on nonsensical values. Returns self for chaining."""
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")
        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.threads < 0:
            raise ValueError("threads must be >= 0")
        if self.worker_type not in WORKER_TYPES:
            raise ValueError(
                f"worker_type must be one of {', '.join(WORKER_TYPES)}, "
                f"got {self.worker_type!r}"
            )
        if self.graceful_timeout <= 0:
            raise ValueError("graceful_timeout must be > 0")
        if self.recv_timeout is not None and self.recv_timeout <= 0:
            raise ValueError("recv_timeout must be > 0")
        if self.max_header_size < 1024:
            raise ValueError("max_header_size must be >= 1024")
        if self.max_body_size < 0:
            raise ValueError("max_body_size must be >= 0")
        if self.recv_chunk < 1:
            raise ValueError("recv_chunk must be >= 1")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level!r}")
        return self
