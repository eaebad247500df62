"""
forkcorn/errors.py — Error kinds raised across the request pipeline.
"""


class ForkcornError(Exception):
    """Base class for every error forkcorn raises on purpose."""


class MalformedRequest(ForkcornError):
    """Raised when request parsing detects a client error."""
    def __init__(self, detail: str = "", status_code: int = 400):
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


class TruncatedRead(MalformedRequest):
    """The peer closed the connection before a complete request arrived."""
    def __init__(self, detail: str = "Client disconnected mid-request"):
        super().__init__(detail, 400)


class ApplicationError(ForkcornError):
    """
    The hosted WSGI application failed.

    ``response_started`` is True once the response head has been committed
    to the wire; after that point no error response can be sent.
    """
    def __init__(self, detail: str = "", response_started: bool = False):
        self.detail = detail
        self.response_started = response_started
        super().__init__(detail)


class ListenerClosed(ForkcornError):
    """accept() was called on a listening socket that has been closed."""
