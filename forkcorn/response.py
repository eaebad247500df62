"""
forkcorn/response.py — Response serialization.

Pure functions from (status, headers, body chunks) to wire bytes. Only what
the application supplied is written: no Content-Length, Date or Server
header is added on its behalf.
"""

from http import HTTPStatus
from typing import Iterable, Iterator

HTTP_VERSION = "HTTP/1.1"


def _sanitize_header_value(value: str) -> str:
    """Strip CR / LF to prevent header injection attacks."""
    return value.replace("\r", "").replace("\n", "")


def serialize_head(status: str, headers: list[tuple[str, str]]) -> bytes:
    """Status line, header lines and the blank line that ends them."""
    lines = [f"{HTTP_VERSION} {_sanitize_header_value(status)}\r\n"]
    for name, value in headers:
        lines.append(f"{name}: {_sanitize_header_value(value)}\r\n")
    lines.append("\r\n")
    return "".join(lines).encode("latin-1")


def iter_response(
    status: str,
    headers: list[tuple[str, str]],
    body: Iterable[bytes],
) -> Iterator[bytes]:
    """Yield the head, then each non-empty body chunk in order."""
    yield serialize_head(status, headers)
    for chunk in body:
        if chunk:
            yield chunk


def serialize_response(
    status: str,
    headers: list[tuple[str, str]],
    body: Iterable[bytes],
) -> bytes:
    return b"".join(iter_response(status, headers, body))


def reason_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def build_error_response(status_code: int, message: str = "") -> bytes:
    """Build a minimal, valid HTTP/1.1 error response."""
    phrase = reason_phrase(status_code)
    body = f"{status_code} {phrase}\r\n{message}".encode("utf-8")
    return serialize_response(
        f"{status_code} {phrase}",
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ],
        [body],
    )


def parse_response(data: bytes) -> tuple[str, list[tuple[str, str]], bytes]:
    """
    Split raw response bytes back into (status, headers, body).

    Used by tests and simple clients; the body is everything after the
    blank line.
    """
    head, sep, body = data.partition(b"\r\n\r\n")
    if not sep:
        raise ValueError("Response has no header terminator")
    lines = head.decode("latin-1").split("\r\n")
    version, _, status = lines[0].partition(" ")
    if not version.startswith("HTTP/"):
        raise ValueError(f"Malformed status line: {lines[0]!r}")
    headers = []
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers.append((name, value.strip()))
    return status, headers, body
