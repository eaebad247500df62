"""
Tests for the listening socket and the accept loop.
"""

import errno
import socket
import threading
import time

import pytest

from conftest import hello_app, http_get, recv_all
from forkcorn.config import Config
from forkcorn.connection import ConnectionHandler
from forkcorn.errors import ListenerClosed
from forkcorn.listener import Acceptor, create_listener


def _handler(app=hello_app):
    return ConnectionHandler(app, Config(recv_timeout=5.0))


class TestCreateListener:
    def test_listening_and_non_blocking(self):
        listener = create_listener("127.0.0.1", 0, 16)
        try:
            assert listener.getsockopt(socket.SOL_SOCKET, socket.SO_ACCEPTCONN) == 1
            assert listener.getblocking() is False
            assert listener.getsockname()[1] != 0
        finally:
            listener.close()

    def test_backlog_is_passed_to_listen(self, monkeypatch):
        calls = []
        real_socket = socket.socket

        class RecordingSocket(real_socket):
            def listen(self, backlog):
                calls.append(backlog)
                super().listen(backlog)

        monkeypatch.setattr(socket, "socket", RecordingSocket)
        listener = create_listener("127.0.0.1", 0, 1)
        listener.close()

        assert calls == [1]

    def test_bind_conflict_raises(self):
        first = create_listener("127.0.0.1", 0, 4)
        try:
            with pytest.raises(OSError):
                create_listener("127.0.0.1", first.getsockname()[1], 4)
        finally:
            first.close()

    def test_full_backlog_never_hangs_a_client(self):
        listener = create_listener("127.0.0.1", 0, 1)
        address = listener.getsockname()
        clients = []
        outcomes = []
        started = time.monotonic()
        try:
            for _ in range(4):
                client = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                client.settimeout(1.0)
                clients.append(client)
                try:
                    client.connect(address)
                    outcomes.append("queued")
                except ConnectionRefusedError:
                    outcomes.append("refused")
                except socket.timeout:
                    outcomes.append("timed out")
        finally:
            for client in clients:
                client.close()
            listener.close()

        assert outcomes[0] == "queued"
        # Linux admits backlog + 1 connections; anything past that must be
        # refused or time out rather than queue.
        assert any(outcome != "queued" for outcome in outcomes[1:])
        assert time.monotonic() - started < 4 * 1.0 + 2.0


class TestAcceptor:
    def test_accept_on_closed_listener_raises_listener_closed(self):
        listener = create_listener("127.0.0.1", 0, 4)
        acceptor = Acceptor(listener, _handler())
        listener.close()

        with pytest.raises(ListenerClosed):
            acceptor.accept()

    def test_lost_accept_race_returns_nothing(self):
        class EmptyListener:
            def fileno(self):
                return 99

            def accept(self):
                raise BlockingIOError(errno.EAGAIN, "try again")

        acceptor = Acceptor(EmptyListener(), _handler())

        assert acceptor.accept() == (None, None)

    def test_run_returns_when_listener_already_closed(self):
        listener = create_listener("127.0.0.1", 0, 4)
        listener.close()

        Acceptor(listener, _handler()).run()

    def test_serves_until_stopped(self):
        listener = create_listener("127.0.0.1", 0, 4)
        acceptor = Acceptor(listener, _handler())
        thread = threading.Thread(target=acceptor.run)
        thread.start()
        try:
            reply = http_get(listener.getsockname(), "/hello")
            assert reply.endswith(b"Hello, World!")
        finally:
            acceptor.stop()
            thread.join(5.0)
            listener.close()

        assert not thread.is_alive()

    def test_threads_handle_slow_connections_concurrently(self):
        def slow_app(environ, start_response):
            time.sleep(1.0)
            return hello_app(environ, start_response)

        listener = create_listener("127.0.0.1", 0, 8)
        acceptor = Acceptor(listener, _handler(slow_app), threads=4)
        thread = threading.Thread(target=acceptor.run)
        thread.start()
        replies = []
        try:
            started = time.monotonic()
            clients = [
                threading.Thread(target=lambda: replies.append(http_get(listener.getsockname())))
                for _ in range(3)
            ]
            for client in clients:
                client.start()
            for client in clients:
                client.join(10.0)
            elapsed = time.monotonic() - started
        finally:
            acceptor.stop()
            thread.join(5.0)
            listener.close()

        assert len(replies) == 3
        assert all(reply.endswith(b"Hello, World!") for reply in replies)
        assert elapsed < 2.5

    def test_stop_waits_for_in_flight_connections(self):
        entered = threading.Event()

        def slow_app(environ, start_response):
            entered.set()
            time.sleep(0.5)
            return hello_app(environ, start_response)

        listener = create_listener("127.0.0.1", 0, 4)
        acceptor = Acceptor(listener, _handler(slow_app), threads=2)
        thread = threading.Thread(target=acceptor.run)
        thread.start()

        client = socket.create_connection(listener.getsockname(), timeout=5.0)
        client.sendall(b"GET / HTTP/1.1\r\n\r\n")
        assert entered.wait(5.0)
        acceptor.stop()
        thread.join(5.0)

        assert not thread.is_alive()
        assert acceptor.in_flight == 0
        assert recv_all(client).endswith(b"Hello, World!")
        client.close()
        listener.close()

    def test_stop_is_idempotent(self):
        listener = create_listener("127.0.0.1", 0, 4)
        acceptor = Acceptor(listener, _handler())
        acceptor.stop()
        acceptor.stop()
        acceptor.run()
        acceptor.stop()
        listener.close()

        assert acceptor.should_exit is True
