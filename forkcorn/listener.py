"""
forkcorn/listener.py — Listening socket and the per-worker accept loop.

The loop sleeps in a selector on the listening socket plus a private
wakeup pipe, so ``stop()`` (safe to call from a signal handler) ends it
without accept timeouts or polling.
"""

import os
import sys
import errno
import select
import socket
import logging
import selectors
import threading
from typing import Optional

from forkcorn.connection import ConnectionHandler
from forkcorn.errors import ListenerClosed

log = logging.getLogger("forkcorn")

# errnos that mean "nothing to accept right now" or "this one connection
# failed"; neither should stop the loop.
_TRANSIENT_ACCEPT_ERRORS = {
    errno.EAGAIN,
    errno.EWOULDBLOCK,
    errno.ECONNABORTED,
    errno.EPROTO,
    errno.EINTR,
}
_RESOURCE_ERRORS = {errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM}


def create_listener(host: str, port: int, backlog: int) -> socket.socket:
    """Create, bind and listen. The returned socket is non-blocking."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if sys.platform == "win32":
            # On Windows, SO_REUSEADDR allows multiple processes to bind to the
            # same port simultaneously (port hijacking). Use SO_EXCLUSIVEADDRUSE
            # to prevent this and ensure only one process owns the port.
            sock.setsockopt(
                socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1  # type: ignore[attr-defined]
            )
        else:
            # On Linux/macOS, SO_REUSEADDR only allows reusing ports in
            # TIME_WAIT state and does NOT allow duplicate active binds.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError as e:
        log.error("Failed to bind to %s:%s - %s", host, port, e)
        sock.close()
        raise
    return sock


class Acceptor:
    """
    Accept loop for one worker.

    ``threads == 0`` handles each connection inline; ``threads > 0`` hands
    it to a thread, with at most that many in flight. ``run()`` only
    returns once every in-flight connection has been handled.
    """

    def __init__(self, listener: socket.socket, handler: ConnectionHandler, threads: int = 0):
        self.listener = listener
        self.handler = handler
        self.threads = threads
        self.should_exit = False
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._slots = threading.BoundedSemaphore(threads) if threads > 0 else None
        self._in_flight: set[threading.Thread] = set()
        self._lock = threading.Lock()

    def stop(self) -> None:
        """Stop accepting; safe to call from a signal handler or another thread."""
        self.should_exit = True
        try:
            os.write(self._wake_w, b"x")
        except (BlockingIOError, OSError):
            # pipe full (already woken) or already closed
            pass

    def accept(self) -> tuple[Optional[socket.socket], Optional[tuple]]:
        """
        Accept one connection. Returns (None, None) when another worker won
        the race; raises ListenerClosed when the listening socket is gone.
        """
        if self.listener.fileno() == -1:
            raise ListenerClosed()
        try:
            return self.listener.accept()
        except OSError as exc:
            if exc.errno in _TRANSIENT_ACCEPT_ERRORS:
                return None, None
            if exc.errno in (errno.EBADF, errno.EINVAL, errno.ENOTSOCK) or self.listener.fileno() == -1:
                raise ListenerClosed() from exc
            raise

    def run(self) -> None:
        selector = selectors.DefaultSelector()
        try:
            selector.register(self.listener, selectors.EVENT_READ, "listener")
        except (ValueError, OSError):
            log.debug("Listener already closed before accept loop started")
            self._close_pipe()
            return
        selector.register(self._wake_r, selectors.EVENT_READ, "wakeup")
        try:
            while not self.should_exit:
                events = selector.select()
                if any(key.data == "wakeup" for key, _ in events):
                    continue
                try:
                    client_socket, client_addr = self.accept()
                except ListenerClosed:
                    log.debug("Listening socket closed, leaving accept loop")
                    break
                except OSError as exc:
                    if exc.errno in _RESOURCE_ERRORS:
                        log.error("accept() failed: %s", exc)
                        # Out of descriptors; wait for handlers to free some.
                        self._wait_for_slot_release()
                        continue
                    log.error("accept() failed", exc_info=True)
                    continue
                if client_socket is None:
                    continue

                log.debug("New connection from %s", client_addr)
                client_socket.setblocking(True)
                self.dispatch(client_socket, client_addr)
        finally:
            selector.close()
            if self.in_flight:
                log.info("Finishing %d in-flight connection(s)", self.in_flight)
            self.drain()
            self._close_pipe()

    def dispatch(self, client_socket: socket.socket, client_addr) -> None:
        if self._slots is None:
            self.handler.handle(client_socket, client_addr)
            return
        self._slots.acquire()
        thread = threading.Thread(
            target=self._run_handler,
            args=(client_socket, client_addr),
            name=f"forkcorn-conn-{client_addr}",
            daemon=True,
        )
        with self._lock:
            self._in_flight.add(thread)
        thread.start()

    def _run_handler(self, client_socket, client_addr) -> None:
        try:
            self.handler.handle(client_socket, client_addr)
        finally:
            with self._lock:
                self._in_flight.discard(threading.current_thread())
            self._slots.release()

    def _wait_for_slot_release(self) -> None:
        with self._lock:
            threads = list(self._in_flight)
        if threads:
            threads[0].join(timeout=1.0)
        else:
            select.select([self._wake_r], [], [], 0.5)

    def drain(self) -> None:
        """Wait for every in-flight connection thread to finish."""
        while True:
            with self._lock:
                threads = list(self._in_flight)
            if not threads:
                return
            log.debug("Waiting for %d in-flight connection(s)", len(threads))
            for thread in threads:
                thread.join()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _close_pipe(self) -> None:
        fds = (self._wake_r, self._wake_w)
        self._wake_r = self._wake_w = -1
        for fd in fds:
            if fd < 0:
                continue
            try:
                os.close(fd)
            except OSError:
                pass
