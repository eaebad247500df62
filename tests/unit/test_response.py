"""
Unit tests for response serialization.
"""

import pytest

from forkcorn.response import (
    build_error_response,
    iter_response,
    parse_response,
    reason_phrase,
    serialize_head,
    serialize_response,
)


class TestSerializeResponse:
    """Tests for serialize_response and friends."""

    def test_hello_world_wire_bytes(self):
        data = serialize_response(
            "200 OK", [("Content-Type", "text/plain")], [b"Hello, World!"]
        )

        assert data == b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n\r\nHello, World!"

    def test_no_headers_are_added(self):
        data = serialize_response("204 No Content", [], [])

        assert data == b"HTTP/1.1 204 No Content\r\n\r\n"
        assert b"Content-Length" not in data
        assert b"Date" not in data

    def test_header_order_and_duplicates_preserved(self):
        head = serialize_head("200 OK", [
            ("Set-Cookie", "a=1"),
            ("X-Z", "last"),
            ("Set-Cookie", "b=2"),
        ])

        assert head == (
            b"HTTP/1.1 200 OK\r\n"
            b"Set-Cookie: a=1\r\n"
            b"X-Z: last\r\n"
            b"Set-Cookie: b=2\r\n"
            b"\r\n"
        )

    def test_header_injection_is_stripped(self):
        head = serialize_head("200 OK", [("X-Evil", "a\r\nSet-Cookie: pwned")])

        assert head.count(b"\r\n") == 3
        assert b"X-Evil: aSet-Cookie: pwned\r\n" in head

    def test_iter_response_streams_and_skips_empty_chunks(self):
        parts = list(iter_response("200 OK", [], [b"a", b"", b"b"]))

        assert parts == [b"HTTP/1.1 200 OK\r\n\r\n", b"a", b"b"]

    def test_body_consumed_lazily(self):
        def body():
            yield b"x"
            raise AssertionError("should not be pulled")

        parts = iter_response("200 OK", [], body())

        assert next(parts).startswith(b"HTTP/1.1 200 OK")
        assert next(parts) == b"x"

    @pytest.mark.parametrize("status, headers, chunks", [
        ("200 OK", [("Content-Type", "text/plain")], [b"Hello, ", b"World!"]),
        ("404 Not Found", [("X-A", "1"), ("X-B", "2"), ("X-A", "3")], [b""]),
        ("302 Found", [("Location", "http://example.com/a?b=c:d")], []),
    ])
    def test_reparse_recovers_status_headers_and_body(self, status, headers, chunks):
        parsed_status, parsed_headers, body = parse_response(
            serialize_response(status, headers, chunks)
        )

        assert parsed_status == status
        assert parsed_headers == headers
        assert body == b"".join(chunks)


class TestErrorResponse:
    def test_error_response_is_complete(self):
        status, headers, body = parse_response(build_error_response(400, "bad line"))

        assert status == "400 Bad Request"
        assert ("Connection", "close") in headers
        assert ("Content-Length", str(len(body))) in headers
        assert body == b"400 Bad Request\r\nbad line"

    def test_unknown_code_phrase(self):
        assert reason_phrase(599) == "Error"
        assert reason_phrase(500) == "Internal Server Error"


def test_parse_response_rejects_garbage():
    with pytest.raises(ValueError):
        parse_response(b"not http at all")
