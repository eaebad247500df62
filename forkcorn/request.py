"""
forkcorn/request.py — HTTP/1.x request parsing.

``parse_request`` is a pure function over bytes; ``read_request`` drives it
from a socket, accumulating reads until the header terminator and the
declared ``Content-Length`` have both arrived.
"""

import re
import socket
from dataclasses import dataclass, field
from io import BytesIO
from typing import Iterator, Optional

from forkcorn.config import Config
from forkcorn.errors import MalformedRequest, TruncatedRead

HEADER_TERMINATOR = b"\r\n\r\n"
LINE_TERMINATOR = b"\r\n"

_VERSION_RE = re.compile(r"^HTTP/(\d)\.(\d)$")
_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def _sanitize_header_value(value: str) -> str:
    """Strip CR / LF to prevent header injection attacks."""
    return value.replace("\r", "").replace("\n", "")


class Headers:
    """
    Case-insensitive multi-map of request headers.

    Insertion order and the original spelling of names are kept for
    forwarding; repeated names stay repeated entries.
    """

    def __init__(self, items=()):
        self._items: list[tuple[str, str]] = []
        for name, value in items:
            self.add(name, value)

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value for *name*, or *default*."""
        lname = name.lower()
        for key, value in self._items:
            if key.lower() == lname:
                return value
        return default

    def get_all(self, name: str) -> list[str]:
        lname = name.lower()
        return [value for key, value in self._items if key.lower() == lname]

    def items(self) -> list[tuple[str, str]]:
        return list(self._items)

    def __contains__(self, name) -> bool:
        return self.get(name) is not None

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __iter__(self) -> Iterator[str]:
        return (key for key, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other) -> bool:
        if isinstance(other, Headers):
            return self._items == other._items
        return NotImplemented

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


@dataclass(frozen=True)
class Request:
    """One parsed HTTP request. Owned by a single connection handler."""
    method: str
    target: str
    path: str
    query_string: str
    version: str
    headers: Headers
    body: BytesIO = field(default_factory=BytesIO, compare=False)

    @property
    def version_tuple(self) -> tuple[int, int]:
        match = _VERSION_RE.match(self.version)
        return int(match.group(1)), int(match.group(2))

    @property
    def content_length(self) -> int:
        return _content_length(self.headers)


def parse_request_line(line: str) -> tuple[str, str, str, str, str]:
    """
    Split a request line into (method, target, path, query, version).

    Exactly three whitespace separated tokens are accepted.
    """
    parts = line.split()
    if len(parts) != 3:
        raise MalformedRequest(f"Malformed request line: {line!r}")
    method, target, version = parts
    if not _TOKEN_RE.match(method):
        raise MalformedRequest(f"Invalid method: {method!r}")
    if not _VERSION_RE.match(version):
        raise MalformedRequest(f"Unsupported HTTP version: {version!r}")
    path, _, query = target.partition("?")
    return method, target, path, query, version


def parse_headers(lines: list[str]) -> Headers:
    headers = Headers()
    for line in lines:
        if not line:
            break
        if line[0] in " \t":
            raise MalformedRequest(f"Folded header lines are not supported: {line!r}")
        if ":" not in line:
            raise MalformedRequest(f"Malformed header line: {line!r}")
        name, value = line.split(":", 1)
        if not _TOKEN_RE.match(name):
            raise MalformedRequest(f"Invalid header name: {name!r}")
        headers.add(name, _sanitize_header_value(value.strip()))
    return headers


def _content_length(headers: Headers) -> int:
    values = headers.get_all("content-length")
    if not values:
        return 0
    if len(set(values)) > 1:
        raise MalformedRequest("Conflicting Content-Length headers")
    try:
        length = int(values[0])
    except ValueError:
        raise MalformedRequest("Invalid Content-Length") from None
    if length < 0:
        raise MalformedRequest("Negative Content-Length")
    return length


def _split_head(data: bytes) -> tuple[bytes, bytes]:
    if HEADER_TERMINATOR in data:
        head, _, rest = data.partition(HEADER_TERMINATOR)
        return head, rest
    # A bare request line without headers, e.g. b"GET / HTTP/1.0\r\n".
    return data.rstrip(b"\r\n"), b""


def _decode_head(head: bytes) -> list[str]:
    # HTTP/1.x header text is ISO-8859-1 on the wire (PEP 3333 keeps it so).
    return head.decode("latin-1").split("\r\n")


def parse_request(data: bytes) -> Request:
    """
    Parse one complete request held in *data*.

    Raises MalformedRequest for bad syntax and TruncatedRead when the body
    is shorter than its declared Content-Length.
    """
    if not data.strip():
        raise MalformedRequest("Empty request")
    head, rest = _split_head(data)
    lines = _decode_head(head)
    method, target, path, query, version = parse_request_line(lines[0])
    headers = parse_headers(lines[1:])

    if "transfer-encoding" in headers:
        raise MalformedRequest("Transfer-Encoding is not supported", 501)

    length = _content_length(headers)
    if len(rest) < length:
        raise TruncatedRead(
            f"Body has {len(rest)} of {length} declared bytes"
        )
    return Request(
        method=method,
        target=target,
        path=path,
        query_string=query,
        version=version,
        headers=headers,
        body=BytesIO(rest[:length]),
    )


def _recv(sock: socket.socket, size: int, phase: str) -> bytes:
    try:
        return sock.recv(size)
    except socket.timeout:
        raise MalformedRequest(f"Timed out waiting for request {phase}", 408) from None


def read_request(sock: socket.socket, config: Config) -> Optional[Request]:
    """
    Read and parse one full HTTP/1.x request from *sock*.

    Returns None when the peer closes the connection before sending
    anything. Raises MalformedRequest (or TruncatedRead) otherwise.
    """
    buf = b""
    line_checked = False

    # ── Phase 1: accumulate bytes until we see the header terminator ──
    while HEADER_TERMINATOR not in buf:
        if len(buf) > config.max_header_size:
            raise MalformedRequest("Headers exceed maximum allowed size", 431)
        chunk = _recv(sock, config.recv_chunk, "headers")
        if not chunk:
            if not buf:
                return None
            if not line_checked:
                # Peer half-closed after a bare request line; still report
                # a bad line as such rather than as a short read.
                parse_request_line(buf.decode("latin-1"))
            raise TruncatedRead("Client disconnected before end of headers")
        buf += chunk
        # Reject a bad request line as soon as it is complete.
        if not line_checked and LINE_TERMINATOR in buf:
            first = buf.split(LINE_TERMINATOR, 1)[0]
            parse_request_line(first.decode("latin-1"))
            line_checked = True

    header_end = buf.index(HEADER_TERMINATOR)
    if header_end > config.max_header_size:
        raise MalformedRequest("Headers exceed maximum allowed size", 431)
    lines = _decode_head(buf[:header_end])
    headers = parse_headers(lines[1:])

    # ── Phase 2: read body bytes guided by Content-Length ──
    length = _content_length(headers)
    if length > config.max_body_size:
        raise MalformedRequest(
            f"Body of {length} bytes exceeds limit of {config.max_body_size}", 413
        )
    remaining = length - (len(buf) - header_end - len(HEADER_TERMINATOR))
    while remaining > 0:
        chunk = _recv(sock, min(config.recv_chunk, remaining), "body")
        if not chunk:
            raise TruncatedRead("Client disconnected before sending full body")
        buf += chunk
        remaining -= len(chunk)

    return parse_request(buf)
