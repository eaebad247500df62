"""
forkcorn/gateway.py — The WSGI (PEP 3333) boundary.

Turns a parsed Request into an environ dict, hands the application a
per-request ``start_response`` and returns the (status, headers, body)
triple for the serializer. Nothing in here touches a socket.
"""

import re
import sys
import logging
from typing import Any, Callable, Iterable, Optional

from urllib.parse import unquote

from forkcorn.errors import ApplicationError
from forkcorn.request import Request

log = logging.getLogger("forkcorn")

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]

_STATUS_RE = re.compile(r"^\d{3} .+$")
_NOTHING = object()


class FileWrapper:
    """
    wsgi.file_wrapper — wraps a file-like object for efficient iteration.
    Matches the interface Gunicorn / uWSGI expose.
    """
    def __init__(self, filelike, blksize=8192):
        self.filelike = filelike
        self.blksize = blksize
        if hasattr(filelike, "close"):
            self.close = filelike.close

    def __iter__(self):
        while True:
            data = self.filelike.read(self.blksize)
            if not data:
                break
            yield data


def build_environ(
    request: Request,
    client_addr: tuple,
    server_name: str,
    server_port: int,
    *,
    multithread: bool = False,
    multiprocess: bool = False,
) -> dict:
    """
    Build a PEP 3333 compliant environ dictionary from a parsed request.
    """
    headers = request.headers
    if "content-length" in headers:
        content_length = str(request.content_length)
    else:
        content_length = ""

    environ = {
        # ── CGI / required variables (PEP 3333 §3.2) ──
        "REQUEST_METHOD":   request.method,
        "SCRIPT_NAME":      "",
        "PATH_INFO":        unquote(request.path, encoding="latin-1"),
        "QUERY_STRING":     request.query_string,
        "CONTENT_TYPE":     headers.get("content-type", ""),
        "CONTENT_LENGTH":   content_length,
        "SERVER_NAME":      server_name,
        "SERVER_PORT":      str(server_port),
        "SERVER_PROTOCOL":  request.version,
        "RAW_URI":          request.target,

        # ── WSGI-specific keys ──
        "wsgi.version":      (1, 0),
        "wsgi.url_scheme":   "http",
        "wsgi.input":        request.body,
        "wsgi.errors":       sys.stderr,
        "wsgi.multithread":  multithread,
        "wsgi.multiprocess": multiprocess,
        "wsgi.run_once":     False,
        "wsgi.file_wrapper": FileWrapper,

        "forkcorn.http_version": request.version_tuple,

        # ── Client info ──
        "REMOTE_ADDR":      client_addr[0] if client_addr else "",
        "REMOTE_PORT":      str(client_addr[1]) if client_addr else "",
    }

    # ── Promote HTTP headers into HTTP_* variables ──
    for name, value in headers.items():
        lname = name.lower()
        if lname in ("content-type", "content-length"):
            continue
        key = "HTTP_" + name.upper().replace("-", "_")
        if key in environ:
            # Cookie pairs are separated by "; ", other list headers by ", ".
            separator = "; " if lname == "cookie" else ", "
            environ[key] += separator + value
        else:
            environ[key] = value

    return environ


class ResponseState:
    """
    Per-request holder for the status and headers given to start_response.

    Written once by the application, read once by the server through
    ``commit()``. A second start_response call without ``exc_info`` is
    rejected with ApplicationError.
    """

    def __init__(self):
        self.status: Optional[str] = None
        self.headers: list[tuple[str, str]] = []
        self.headers_sent = False
        self.rejected: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.status is not None

    def start_response(self, status, headers, exc_info=None):
        if exc_info:
            try:
                if self.headers_sent:
                    raise exc_info[1].with_traceback(exc_info[2])
            finally:
                exc_info = None
        elif self.status is not None:
            self.rejected = "start_response called twice without exc_info"
            raise ApplicationError(self.rejected, response_started=self.headers_sent)

        if not isinstance(status, str) or not _STATUS_RE.match(status):
            self.rejected = f"Invalid status line: {status!r}"
            raise ApplicationError(self.rejected)
        header_list = list(headers)
        for pair in header_list:
            if (
                not isinstance(pair, tuple) or len(pair) != 2
                or not isinstance(pair[0], str) or not isinstance(pair[1], str)
            ):
                self.rejected = f"Invalid response header: {pair!r}"
                raise ApplicationError(self.rejected)

        self.status = status
        self.headers = header_list
        self.rejected = None

        def write(data: bytes):
            raise NotImplementedError(
                "The legacy write() callable is not supported by this server. "
                "Return an iterable from the WSGI app instead."
            )
        return write

    def commit(self) -> tuple[str, list[tuple[str, str]]]:
        """Hand status and headers to the serializer. Allowed exactly once."""
        if self.status is None:
            raise ApplicationError("Application returned without calling start_response")
        if self.headers_sent:
            raise RuntimeError("Response head already committed")
        self.headers_sent = True
        return self.status, self.headers


def close_iterable(iterable: Any) -> None:
    if hasattr(iterable, "close"):
        try:
            iterable.close()
        except Exception:
            log.debug("Error closing body iterable", exc_info=True)


class ResponseBody:
    """
    The application's body iterable, iterated exactly once.

    Chunks must be bytes. Failures while iterating surface as
    ApplicationError with ``response_started=True``.
    """

    def __init__(self, iterable, iterator=None, first=_NOTHING):
        self._iterable = iterable
        self._iterator = iterator
        self._first = first
        self._consumed = False
        self._closed = False

    def __iter__(self):
        if self._consumed:
            raise RuntimeError("Response body can only be iterated once")
        self._consumed = True
        return self._generate()

    def _generate(self):
        if self._first is not _NOTHING:
            yield _check_chunk(self._first)
            self._first = _NOTHING
        try:
            iterator = self._iterator if self._iterator is not None else iter(self._iterable)
            for chunk in iterator:
                yield _check_chunk(chunk)
        except ApplicationError as exc:
            exc.response_started = True
            raise
        except Exception as exc:
            raise ApplicationError(
                f"Application failed while producing the body: {exc!r}",
                response_started=True,
            ) from exc

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            close_iterable(self._iterable)


def _check_chunk(chunk) -> bytes:
    if isinstance(chunk, bytes):
        return chunk
    if isinstance(chunk, (bytearray, memoryview)):
        return bytes(chunk)
    raise ApplicationError(
        f"Body chunks must be bytes, got {type(chunk).__name__}",
        response_started=True,
    )


def call_application(app: WSGIApp, environ: dict, state: Optional[ResponseState] = None):
    """
    Invoke *app* and return ``(status, headers, body)``.

    Generator applications call start_response lazily, so when it has not
    fired yet the first body chunk is pulled here.
    """
    state = state if state is not None else ResponseState()
    try:
        result = app(environ, state.start_response)
    except ApplicationError:
        raise
    except Exception as exc:
        raise ApplicationError(f"Application raised {exc!r}") from exc

    if state.rejected:
        close_iterable(result)
        raise ApplicationError(state.rejected)

    iterator = None
    first = _NOTHING
    if not state.started:
        try:
            iterator = iter(result)
            first = next(iterator, _NOTHING)
        except ApplicationError:
            close_iterable(result)
            raise
        except Exception as exc:
            close_iterable(result)
            raise ApplicationError(f"Application raised {exc!r}") from exc

    if state.rejected or not state.started:
        close_iterable(result)
        raise ApplicationError(
            state.rejected or "Application returned without calling start_response"
        )

    status, headers = state.commit()
    return status, headers, ResponseBody(result, iterator, first)
