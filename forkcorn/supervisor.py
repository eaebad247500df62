"""
forkcorn/supervisor.py — Pre-fork worker supervisor.

The supervisor binds the listening socket once, then starts N workers that
all accept on it: forked processes inheriting the descriptor, or threads in
this process. The kernel decides which worker gets each connection.

Shutdown (SIGTERM / SIGINT / ``stop()``):
    1. every worker is told to stop accepting
    2. workers finish the connections they are handling and exit
    3. the supervisor joins them, bounded by ``graceful_timeout``
    4. the listening socket is closed, once, by the supervisor
"""

import os
import signal
import socket
import logging
import threading
import time
import multiprocessing
from multiprocessing.connection import wait
from typing import Callable, Optional

from forkcorn.config import Config, DEFAULT_HOST, DEFAULT_PORT
from forkcorn.connection import ConnectionHandler
from forkcorn.listener import Acceptor, create_listener
from forkcorn.loader import load_app

log = logging.getLogger("forkcorn")

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _make_handler(app: Callable, config: Config, listener: socket.socket) -> ConnectionHandler:
    server_port = listener.getsockname()[1]
    threaded = config.threads > 0 or (config.worker_type == "thread" and config.workers > 1)
    return ConnectionHandler(
        app,
        config,
        config.host,
        server_port,
        multithread=threaded,
        multiprocess=config.worker_type == "process" and config.workers > 1,
    )


def _worker_main(listener: socket.socket, app: Callable, config: Config) -> None:
    """Entry point of a forked worker process."""
    acceptor = Acceptor(listener, _make_handler(app, config, listener), config.threads)

    def handle_exit(signum, frame):
        log.info("Worker %d received %s, finishing in-flight requests",
                 os.getpid(), signal.Signals(signum).name)
        acceptor.stop()

    for sig in _SHUTDOWN_SIGNALS:
        signal.signal(sig, handle_exit)
    # Blocked by ProcessWorker.start() until our own handlers were in place.
    signal.pthread_sigmask(signal.SIG_UNBLOCK, _SHUTDOWN_SIGNALS)

    log.info("Booting worker with pid: %d", os.getpid())
    acceptor.run()
    log.info("Worker exiting (pid: %d)", os.getpid())


class ProcessWorker:
    """A forked worker process sharing the supervisor's listening socket."""

    def __init__(self, listener: socket.socket, app: Callable, config: Config, name: str):
        ctx = multiprocessing.get_context("fork")
        self.name = name
        self.process = ctx.Process(
            target=_worker_main,
            args=(listener, app, config),
            name=name,
            daemon=False,
        )

    def start(self) -> None:
        previous = signal.pthread_sigmask(signal.SIG_BLOCK, _SHUTDOWN_SIGNALS)
        try:
            self.process.start()
        finally:
            signal.pthread_sigmask(signal.SIG_SETMASK, previous)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def sentinel(self):
        return self.process.sentinel

    @property
    def exitcode(self) -> Optional[int]:
        return self.process.exitcode

    def is_alive(self) -> bool:
        return self.process.is_alive()

    def stop(self) -> None:
        if self.process.is_alive():
            # SIGTERM asks the worker's accept loop to stop; it is not a kill.
            self.process.terminate()

    def kill(self) -> None:
        self.process.kill()

    def join(self, timeout: Optional[float] = None) -> None:
        self.process.join(timeout)


class ThreadWorker:
    """A worker thread running its own accept loop inside the supervisor."""

    def __init__(self, listener: socket.socket, app: Callable, config: Config,
                 name: str, on_exit: Callable[[], None]):
        self.name = name
        self.acceptor = Acceptor(listener, _make_handler(app, config, listener), config.threads)
        self._on_exit = on_exit
        self.exitcode: Optional[int] = None
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self.acceptor.run()
            self.exitcode = 0
        except Exception:
            log.error("Worker %s crashed", self.name, exc_info=True)
            self.exitcode = 1
        finally:
            self._on_exit()

    def start(self) -> None:
        self.thread.start()

    @property
    def pid(self) -> int:
        return os.getpid()

    sentinel = None

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def stop(self) -> None:
        self.acceptor.stop()

    def kill(self) -> None:
        log.warning("Thread worker %s cannot be killed; abandoning it", self.name)

    def join(self, timeout: Optional[float] = None) -> None:
        self.thread.join(timeout)


class Supervisor:
    """
    Owns the listening socket and the worker pool.

    Attributes:
        app: The WSGI application callable
        config: Server configuration
        started: Event set once every worker has been spawned
        should_exit: Flag to signal shutdown
        exit_code: 0 after a requested shutdown, 1 once every worker died
    """

    def __init__(self, app: Callable, config: Optional[Config] = None):
        self.app = app
        self.config = (config or Config()).validate()
        if self.config.worker_type == "process" and not hasattr(os, "fork"):
            raise RuntimeError(
                "Process workers need os.fork(); use worker_type='thread' on this platform"
            )
        self.listener: Optional[socket.socket] = None
        self.should_exit = False
        self.exit_code = 0
        self.started = threading.Event()
        self._workers: list = []
        self._spawned = 0
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._previous_handlers: dict = {}

    @property
    def workers(self) -> list:
        return list(self._workers)

    @property
    def address(self) -> Optional[tuple]:
        if self.listener is None or self.listener.fileno() == -1:
            return None
        return self.listener.getsockname()[:2]

    # ── lifecycle ──────────────────────────────────────────────────────────

    def signal_exit(self, signum=None, frame=None) -> None:
        """Signal handler: request graceful shutdown."""
        if signum is not None:
            log.info("Received %s, shutting down", signal.Signals(signum).name)
        self.stop()

    def stop(self) -> None:
        """Request graceful shutdown. Safe from signal handlers and threads."""
        self.should_exit = True
        self._wakeup()

    def _wakeup(self) -> None:
        try:
            os.write(self._wake_w, b"x")
        except (BlockingIOError, OSError):
            pass

    def run(self, install_signals: bool = True) -> int:
        """Bind, spawn workers and block until shutdown; returns the exit status."""
        cfg = self.config
        self.listener = create_listener(cfg.host, cfg.port, cfg.backlog)
        host, port = self.address
        log.info("Started supervisor process [%d]", os.getpid())
        log.info("Listening on http://%s:%s", host, port)
        log.info("Using %d %s worker(s)%s", cfg.workers, cfg.worker_type,
                 f", {cfg.threads} thread(s) each" if cfg.threads else "")

        if install_signals:
            self._install_signals()
        try:
            for _ in range(cfg.workers):
                self._spawn_worker()
            self.started.set()
            self._monitor()
        finally:
            self._shutdown_workers()
            self._close_listener()
            self._restore_signals()
            self.started.set()
        log.info("Shutdown complete")
        return self.exit_code

    def _install_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not in the main thread; signal handlers not installed")
            return
        for sig in _SHUTDOWN_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self.signal_exit)

    def _restore_signals(self) -> None:
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()

    def _spawn_worker(self) -> None:
        self._spawned += 1
        name = f"forkcorn-worker-{self._spawned}"
        if self.config.worker_type == "process":
            worker = ProcessWorker(self.listener, self.app, self.config, name)
        else:
            worker = ThreadWorker(self.listener, self.app, self.config, name, self._wakeup)
        worker.start()
        self._workers.append(worker)
        log.debug("Spawned %s (pid %s)", name, worker.pid)

    def _monitor(self) -> None:
        while not self.should_exit:
            waitables = [self._wake_r]
            waitables.extend(w.sentinel for w in self._workers if w.sentinel is not None)
            ready = wait(waitables)
            if self._wake_r in ready:
                self._drain_wakeups()
            self._reap()
            if not self._workers and not self.should_exit:
                log.error("No workers left, shutting down")
                self.exit_code = 1
                break

    def _drain_wakeups(self) -> None:
        try:
            while os.read(self._wake_r, 512):
                pass
        except (BlockingIOError, OSError):
            pass

    def _reap(self) -> None:
        for worker in list(self._workers):
            if worker.is_alive():
                continue
            worker.join()
            self._workers.remove(worker)
            if self.should_exit:
                continue
            log.warning("Worker %s (pid %s) exited unexpectedly with code %s",
                        worker.name, worker.pid, worker.exitcode)
            if self.config.replace_workers:
                self._spawn_worker()

    def _shutdown_workers(self) -> None:
        workers = list(self._workers)
        if workers:
            log.info("Stopping %d worker(s), waiting up to %.1fs",
                     len(workers), self.config.graceful_timeout)
        for worker in workers:
            worker.stop()
        deadline = time.monotonic() + self.config.graceful_timeout
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
        for worker in workers:
            if worker.is_alive():
                log.warning("Worker %s did not exit within %.1fs",
                            worker.name, self.config.graceful_timeout)
                worker.kill()
                worker.join(1.0)
        self._workers = [w for w in workers if w.is_alive()]

    def _close_listener(self) -> None:
        if self.listener is not None:
            try:
                self.listener.close()
            except OSError:
                pass
        fds = (self._wake_r, self._wake_w)
        self._wake_r = self._wake_w = -1
        for fd in fds:
            try:
                os.close(fd)
            except OSError:
                pass


def serve(app_path: str, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, **options) -> int:
    """
    Load and serve a WSGI application.
    Args:
        app_path: Module path in format "module:attribute" (e.g., "main:app")
        host: Host address to bind to
        port: Port number to bind to
        options: Any other Config field (workers, threads, backlog, ...)
    """
    app = load_app(app_path)
    return run(app, host, port, **options)


def run(app: Callable, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, **options) -> int:
    """
    Serve a WSGI application directly (already imported).
    Args:
        app: A WSGI callable
        host: Host address to bind to
        port: Port number to bind to
        options: Any other Config field (workers, threads, backlog, ...)
    """
    config = Config(host=host, port=port, **options)
    return Supervisor(app, config).run()
