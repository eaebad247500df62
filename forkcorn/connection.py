"""
forkcorn/connection.py — One request/response cycle on one accepted socket.
"""

import socket
import logging
from typing import Optional

from forkcorn.colors import REQUEST_LOG, RESPONSE_LOG, access_extra
from forkcorn.config import Config
from forkcorn.errors import ApplicationError, MalformedRequest
from forkcorn.gateway import WSGIApp, build_environ, call_application
from forkcorn.request import read_request
from forkcorn.response import build_error_response, iter_response

log = logging.getLogger("forkcorn")


def _safe_send(sock: socket.socket, data: bytes) -> bool:
    """Send data, returning False if client disconnected."""
    try:
        sock.sendall(data)
        return True
    except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, OSError):
        return False


class ConnectionHandler:
    """
    Drives parse → environ → app → serialize → write → close for one
    connection. The socket is always closed when ``handle`` returns.
    """

    def __init__(
        self,
        app: WSGIApp,
        config: Config,
        server_name: Optional[str] = None,
        server_port: Optional[int] = None,
        *,
        multithread: bool = False,
        multiprocess: bool = False,
    ):
        self.app = app
        self.config = config
        self.server_name = server_name or config.host
        self.server_port = config.port if server_port is None else server_port
        self.multithread = multithread
        self.multiprocess = multiprocess

    def handle(self, sock: socket.socket, client_addr: tuple) -> None:
        try:
            self._handle(sock, client_addr)
        except Exception:
            log.error("Fatal error in connection handler", exc_info=True)
        finally:
            try:
                sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass
            try:
                sock.close()
            except OSError:
                pass
            log.debug("%s:%s  connection closed", *_addr(client_addr))

    def _handle(self, sock: socket.socket, client_addr: tuple) -> None:
        ip, port = _addr(client_addr)
        sock.settimeout(self.config.recv_timeout)
        try:
            request = read_request(sock, self.config)
        except MalformedRequest as exc:
            log.warning("%s:%s  → %d %s", ip, port, exc.status_code, exc.detail)
            _safe_send(sock, build_error_response(exc.status_code, exc.detail))
            return
        except OSError as exc:
            log.warning("%s:%s  recv error: %s", ip, port, exc)
            return

        if request is None:
            log.debug("%s:%s closed connection without a request", ip, port)
            return

        client = f"{ip}:{port}"
        log.info(REQUEST_LOG, client, request.method, request.target, request.version,
                 extra=access_extra())

        environ = build_environ(
            request,
            client_addr,
            self.server_name,
            self.server_port,
            multithread=self.multithread,
            multiprocess=self.multiprocess,
        )
        try:
            status, headers, body = call_application(self.app, environ)
        except ApplicationError as exc:
            log.error("WSGI app failed: %s", exc.detail, exc_info=exc.__cause__ is not None)
            _safe_send(sock, build_error_response(500))
            _log_response(client, request, 500)
            return

        try:
            for data in iter_response(status, headers, body):
                if not _safe_send(sock, data):
                    log.warning("%s:%s  client disconnected during response", ip, port)
                    return
        except ApplicationError as exc:
            # Head is already on the wire; all that is left is to close.
            log.error(
                "WSGI app failed after response started: %s",
                exc.detail,
                exc_info=exc.__cause__ is not None,
            )
            return
        finally:
            body.close()

        _log_response(client, request, status)


def _addr(client_addr) -> tuple:
    if isinstance(client_addr, tuple) and len(client_addr) >= 2:
        return client_addr[0], client_addr[1]
    return client_addr or "unix", ""


def _log_response(client: str, request, status) -> None:
    code = str(status).split()[0]
    log.info(RESPONSE_LOG, client, request.method, request.target, code,
             extra=access_extra(code))
