"""
forkcorn/cli.py — Command-line interface for the forkcorn WSGI server.

``forkcorn APP`` runs the supervisor in this process. ``--reload`` runs it
as a child ``python -m forkcorn`` instead and restarts that child whenever
watchdog reports a changed ``.py`` file.
"""
import argparse
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from multiprocessing.connection import wait
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from forkcorn import __version__
from forkcorn.colors import setup_logging
from forkcorn.config import Config, LOG_LEVELS, WORKER_TYPES
from forkcorn.loader import load_app
from forkcorn.supervisor import Supervisor

log = logging.getLogger("forkcorn")

IGNORED_DIRS = frozenset({
    "__pycache__", ".git", ".hg", ".svn", ".tox", ".eggs", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", "node_modules", "build", "dist",
})


def is_watched(path: str) -> bool:
    """Python sources outside caches, VCS and virtualenv directories."""
    parts = Path(path).parts
    if not parts or not parts[-1].endswith(".py"):
        return False
    return not any(p in IGNORED_DIRS or p.endswith(".egg-info") for p in parts[:-1])


def child_command(argv: list[str]) -> list[str]:
    return [sys.executable, "-m", "forkcorn", *(a for a in argv if a != "--reload")]


class _SourceChangeHandler(FileSystemEventHandler):

    # Not "opened"/"closed": the child importing a module must not restart it.
    EVENT_TYPES = frozenset({"created", "modified", "moved", "deleted"})

    def __init__(self, reloader: "Reloader"):
        self.reloader = reloader

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in self.EVENT_TYPES:
            return
        for path in (getattr(event, "src_path", ""), getattr(event, "dest_path", "")):
            if path:
                self.reloader.notify_change(os.fsdecode(path))


class Reloader:
    """
    Keeps one server child running and replaces it after source changes.

    Signal handlers, the watchdog thread and a per-child waiter thread only
    record what happened and write a byte to a wakeup pipe; ``run`` blocks
    on that pipe, the same way the supervisor waits for its workers.
    """

    def __init__(self, command: list[str], config: Config,
                 watch_dir: Optional[str] = None, debounce: float = 0.5):
        self.command = command
        self.config = config
        self.watch_dir = watch_dir or os.getcwd()
        self.debounce = debounce
        self.process: Optional[subprocess.Popen] = None
        self.should_exit = False
        self.changed: Optional[str] = None
        self.restarts = 0
        self._last_change = 0.0
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)

    def _wakeup(self) -> None:
        try:
            os.write(self._wake_w, b"x")
        except OSError:
            pass

    def notify_change(self, path: str) -> None:
        if not is_watched(path):
            return
        now = time.monotonic()
        if now - self._last_change < self.debounce:
            return
        self._last_change = now
        self.changed = path
        self._wakeup()

    def request_exit(self, signum=None, frame=None) -> None:
        self.should_exit = True
        self._wakeup()

    def start_child(self) -> None:
        self.process = subprocess.Popen(self.command)
        log.info("Started server process [%d]", self.process.pid)
        threading.Thread(target=self._await_child, args=(self.process,), daemon=True).start()

    def _await_child(self, process: subprocess.Popen) -> None:
        process.wait()
        self._wakeup()

    def stop_child(self) -> None:
        process, self.process = self.process, None
        if process is None or process.poll() is not None:
            return
        # SIGTERM is the child supervisor's graceful shutdown.
        process.terminate()
        try:
            process.wait(timeout=self.config.graceful_timeout + 5)
        except subprocess.TimeoutExpired:
            log.warning("Server process [%d] did not stop, killing it", process.pid)
            process.kill()
            process.wait()

    def run(self, install_signals: bool = True) -> int:
        if install_signals:
            signal.signal(signal.SIGINT, self.request_exit)
            signal.signal(signal.SIGTERM, self.request_exit)
        observer = Observer()
        observer.schedule(_SourceChangeHandler(self), self.watch_dir, recursive=True)
        observer.start()
        log.info("Watching for changes in %s", self.watch_dir)
        self.start_child()
        try:
            while not self.should_exit:
                wait([self._wake_r])
                self._drain_wakeups()
                if self.should_exit:
                    break
                if self.changed is not None:
                    log.info("Detected change in %s, restarting", self.changed)
                    self.changed = None
                    self.stop_child()
                    self.start_child()
                    self.restarts += 1
                elif self.process is not None and self.process.poll() is not None:
                    log.warning("Server exited with code %d; waiting for a change",
                                self.process.returncode)
                    self.process = None
        finally:
            self.stop_child()
            observer.stop()
            observer.join()
            fds = (self._wake_r, self._wake_w)
            self._wake_r = self._wake_w = -1
            for fd in fds:
                os.close(fd)
            log.info("Reloader stopped")
        return 0

    def _drain_wakeups(self) -> None:
        try:
            while os.read(self._wake_r, 512):
                pass
        except (BlockingIOError, OSError):
            pass


def run_server_direct(app_path: str, config: Config) -> int:
    """Run the supervisor in the current process (no reload)."""
    try:
        app = load_app(app_path)
    except (ValueError, ImportError, AttributeError, TypeError) as e:
        log.error("Failed to load application: %s", e)
        return 1

    try:
        supervisor = Supervisor(app, config)
        return supervisor.run()
    except (OSError, RuntimeError) as e:
        log.error("Server error: %s", e)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="forkcorn",
        description="forkcorn - A small pre-fork WSGI server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  forkcorn main:app --workers 4             Four forked worker processes
  forkcorn main:app --threads 8             Handle connections on threads
  forkcorn app:create_app() --reload        Restart on source changes

Options not given on the command line fall back to FORKCORN_* environment
variables (FORKCORN_PORT, FORKCORN_WORKERS, ...), then to defaults.
        """,
    )

    parser.add_argument("app", metavar="APP",
                        help="WSGI application as 'module:attribute' or 'module:factory()'")
    parser.add_argument("--host", default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: 8000)")
    parser.add_argument("--backlog", type=int, default=None,
                        help="Queued connections the kernel keeps (default: 128)")
    parser.add_argument("-w", "--workers", type=int, default=None,
                        help="Workers accepting on the shared socket (default: 1)")
    parser.add_argument("--worker-type", choices=WORKER_TYPES, default=None,
                        help="Forked processes or in-process threads (default: process)")
    parser.add_argument("--threads", type=int, default=None,
                        help="Connection threads per worker; 0 serves one at a time")
    parser.add_argument("--graceful-timeout", type=float, default=None,
                        help="Seconds in-flight requests get on shutdown (default: 30)")
    parser.add_argument("--replace-workers", action="store_true", default=None,
                        help="Respawn workers that exit unexpectedly")
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when .py files change")
    parser.add_argument("--log-level", default=None, choices=LOG_LEVELS.keys(),
                        help="Log level (default: info)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_config(parsed_args: argparse.Namespace, environ=None) -> Config:
    """CLI flags override FORKCORN_* environment variables."""
    return Config.from_env(
        environ,
        host=parsed_args.host,
        port=parsed_args.port,
        backlog=parsed_args.backlog,
        workers=parsed_args.workers,
        worker_type=parsed_args.worker_type,
        threads=parsed_args.threads,
        graceful_timeout=parsed_args.graceful_timeout,
        replace_workers=parsed_args.replace_workers,
        log_level=parsed_args.log_level,
    ).validate()


def main(args: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    argv = sys.argv[1:] if args is None else list(args)
    parser = create_parser()
    parsed_args = parser.parse_args(argv)

    try:
        config = build_config(parsed_args)
    except (ValueError, TypeError) as e:
        parser.error(str(e))

    setup_logging(config.log_level_number)
    log.info("forkcorn %s serving %s", __version__, parsed_args.app)

    if parsed_args.reload:
        return Reloader(child_command(argv), config).run()
    return run_server_direct(parsed_args.app, config)


if __name__ == "__main__":
    sys.exit(main())
