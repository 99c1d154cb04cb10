"""Unix-socket server exposing the privileged engine to the unprivileged client."""

from __future__ import annotations

import logging
import os
import socket
import socketserver
import stat
import threading
from typing import Any, Callable, Set

from ..models import ErrorKind, OpResult
from .protocol import (
    MAX_LINE_BYTES,
    ProtocolError,
    Response,
    decode_request,
    encode,
    request_id_hint,
)

logger = logging.getLogger(__name__)

SOCKET_MODE = 0o666

Dispatcher = Callable[[Any], OpResult]


class _EngineRequestHandler(socketserver.StreamRequestHandler):
    """
    Brief: Read newline-delimited requests and write one reply per request.

    Inputs:
    - request: connected Unix stream socket provided by socketserver

    Outputs:
    - None; the connection stays open until the client closes it.
    """

    def setup(self) -> None:
        super().setup()
        self.server.track(self.connection)  # type: ignore[attr-defined]

    def finish(self) -> None:
        self.server.untrack(self.connection)  # type: ignore[attr-defined]
        super().finish()

    def handle(self) -> None:
        dispatch: Dispatcher = self.server.dispatch  # type: ignore[attr-defined]
        while True:
            try:
                line = self.rfile.readline(MAX_LINE_BYTES + 1)
            except OSError as exc:
                logger.debug("Client read failed: %s", exc)
                return
            if not line:
                return
            if not line.strip():
                continue

            try:
                request = decode_request(line.strip())
            except ProtocolError as exc:
                logger.warning("Rejected request: %s", exc)
                reply = Response.from_result(
                    request_id_hint(line),
                    OpResult.failure(ErrorKind.PROTOCOL_ERROR, str(exc)),
                )
                if len(line) > MAX_LINE_BYTES and not line.endswith(b"\n"):
                    # Rest of an oversized line cannot be resynchronised.
                    self._send(reply)
                    return
            else:
                logger.debug("Request %d: %s", request.id, request.op)
                reply = Response.from_result(request.id, dispatch(request))

            if not self._send(reply):
                return

    def _send(self, reply: Response) -> bool:
        try:
            self.wfile.write(encode(reply))
            self.wfile.flush()
            return True
        except OSError as exc:
            logger.debug("Client write failed: %s", exc)
            return False


class EngineServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Threaded Unix-socket server; each connection gets its own thread.

    Inputs (constructor):
      - socket_path: Filesystem path of the listening socket.
      - dispatch: Callable(request) -> OpResult, normally PrivilegedEngine.handle.
    """

    daemon_threads = True

    def __init__(self, socket_path: str, dispatch: Dispatcher) -> None:
        self.socket_path = socket_path
        self.dispatch = dispatch
        self._connections: Set[socket.socket] = set()
        self._connections_lock = threading.Lock()
        _remove_stale_socket(socket_path)
        parent = os.path.dirname(socket_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        super().__init__(socket_path, _EngineRequestHandler)
        os.chmod(socket_path, SOCKET_MODE)

    def track(self, conn: socket.socket) -> None:
        with self._connections_lock:
            self._connections.add(conn)

    def untrack(self, conn: socket.socket) -> None:
        with self._connections_lock:
            self._connections.discard(conn)

    def server_close(self) -> None:
        super().server_close()
        with self._connections_lock:
            live = list(self._connections)
        for conn in live:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove socket %s: %s", self.socket_path, exc)


def _remove_stale_socket(path: str) -> None:
    """Remove a socket file left behind by a previous engine, refusing live ones."""
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        raise OSError(f"{path} exists and is not a socket")

    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        probe.settimeout(0.5)
        probe.connect(path)
    except OSError:
        os.unlink(path)
        return
    finally:
        probe.close()
    raise OSError(f"Another engine is already listening on {path}")


class EngineServerHandle:
    """
    Brief: Handle for an EngineServer running in a background thread.

    Inputs:
    - server: EngineServer instance.
    - thread: Thread running serve_forever().

    Outputs:
    - stop() shuts the server down and removes the socket file.
    """

    def __init__(self, server: EngineServer, thread: threading.Thread) -> None:
        self.server = server
        self._thread = thread

    @property
    def socket_path(self) -> str:
        return self.server.socket_path

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        try:
            self.server.shutdown()
        finally:
            self.server.server_close()
            self._thread.join(timeout=timeout)


def start_engine_server(socket_path: str, dispatch: Dispatcher) -> EngineServerHandle:
    """
    Brief: Start an EngineServer on socket_path in a daemon thread.

    Inputs:
    - socket_path: Unix socket path.
    - dispatch: Callable(request) -> OpResult.

    Outputs:
    - EngineServerHandle

    Example:
        >>> # handle = start_engine_server("/tmp/dnsswitch.sock", engine.handle)
        >>> # handle.stop()
    """

    server = EngineServer(socket_path, dispatch)
    thread = threading.Thread(
        target=server.serve_forever, name="dnsswitch-engine", daemon=True
    )
    thread.start()
    logger.info("Engine listening on %s", socket_path)
    return EngineServerHandle(server, thread)
