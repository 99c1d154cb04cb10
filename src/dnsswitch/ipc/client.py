"""Unprivileged-side connection to the engine's Unix socket."""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from typing import Callable, List, Optional

from ..models import OpResult
from .protocol import MAX_LINE_BYTES, ProtocolError, Response, decode_response, encode, request_for

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """
    Brief: The engine could not be reached or the connection broke mid-call.

    Inputs:
    - message: human-readable description

    Outputs:
    - Exception instance
    """


class RequestLost(TransportError):
    """The request was sent but its reply never arrived; the engine may still act on it."""


class EngineClient:
    """Call-with-reply client for the privileged engine.

    Inputs (constructor):
      - socket_path: Engine socket path.
      - timeout: Seconds to wait for a reply (bounded by the proxy start window).
      - connect_timeout: Seconds allowed for the initial connect.
      - on_disconnect: Optional callback invoked once when a live connection is lost.

    Example:
      >>> # client = EngineClient("/var/run/dnsswitch.sock")
      >>> # client.connect(); client.apply_dns(["1.1.1.1"]).ok
    """

    def __init__(
        self,
        socket_path: str,
        *,
        timeout: float = 60.0,
        connect_timeout: float = 2.0,
        on_disconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        self.socket_path = socket_path
        self.timeout = float(timeout)
        self.connect_timeout = float(connect_timeout)
        self.on_disconnect = on_disconnect
        self._sock: Optional[socket.socket] = None
        self._reader = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> None:
        """Brief: Open the socket; raises TransportError when unreachable."""
        with self._lock:
            if self._sock is not None:
                return
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(self.connect_timeout)
            try:
                sock.connect(self.socket_path)
            except OSError as exc:
                sock.close()
                raise TransportError(
                    f"Engine unreachable at {self.socket_path}: {exc}"
                ) from exc
            sock.settimeout(self.timeout)
            self._sock = sock
            self._reader = sock.makefile("rb")
            logger.debug("Connected to engine at %s", self.socket_path)

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
            self._reader = None
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None

    def _lost(self, reason: str, error: type = TransportError) -> TransportError:
        had_connection = self._sock is not None
        self._close_locked()
        logger.warning("Engine connection lost: %s", reason)
        if had_connection and self.on_disconnect is not None:
            try:
                self.on_disconnect()
            except Exception:  # pragma: no cover
                logger.exception("on_disconnect callback failed")
        return error(reason)

    def call(self, op: str, servers: Optional[List[str]] = None) -> OpResult:
        """Brief: Send one request and wait for its reply.

        Inputs:
          - op: is_ready, apply, clear, flush or status.
          - servers: Server strings for apply.

        Outputs:
          - OpResult decoded from the engine's reply.

        Raises:
          - TransportError: not connected, or the request could not be sent.
          - RequestLost: sent, but the reply timed out, was garbled or the
            connection dropped before it arrived.
        """

        request = request_for(op, servers, next(self._ids))
        with self._lock:
            if self._sock is None or self._reader is None:
                raise TransportError("Not connected to engine")
            try:
                self._sock.sendall(encode(request))
            except OSError as exc:
                raise self._lost(f"Engine I/O error: {exc}")
            try:
                while True:
                    line = self._reader.readline(MAX_LINE_BYTES + 1)
                    if not line:
                        raise self._lost("Engine closed the connection", RequestLost)
                    reply: Response = decode_response(line.strip())
                    if reply.id == request.id:
                        return reply.to_result()
                    logger.debug("Discarding reply for stale request %d", reply.id)
            except socket.timeout:
                raise self._lost(
                    f"No reply from engine within {self.timeout:g} seconds", RequestLost
                )
            except ProtocolError as exc:
                raise self._lost(f"Garbled reply from engine: {exc}", RequestLost)
            except OSError as exc:
                raise self._lost(f"Engine I/O error: {exc}", RequestLost)

    def is_ready(self) -> bool:
        return self.call("is_ready").ok

    def apply_dns(self, servers: List[str]) -> OpResult:
        return self.call("apply", servers)

    def clear_dns(self) -> OpResult:
        return self.call("clear")

    def flush_cache(self) -> OpResult:
        return self.call("flush")

    def status(self) -> OpResult:
        return self.call("status")
