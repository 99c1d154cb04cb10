"""Unprivileged-side channel to the privileged engine.

Brief:
  ChannelManager collapses the escalation chain into one OpResult per call:
  use a live engine connection, otherwise connect (installing the engine
  service first when it is missing), otherwise run the operation once
  through an elevation prompt. Each step is an independent strategy tried
  in order by run_chain.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple

from .classifier import classify
from .installer import InstallError, OneShotElevator, ServiceInstaller
from .ipc.client import EngineClient, RequestLost, TransportError
from .models import ChannelState, ErrorKind, EscalationOutcome, OpResult

logger = logging.getLogger(__name__)

Strategy = Callable[[], OpResult]
ClientFactory = Callable[[Callable[[], None]], EngineClient]

# Operations that change resolver state; never sent twice for one call.
MUTATING_OPS = ("apply", "clear")


class StrategyUnavailable(Exception):
    """
    Brief: Raised by a strategy that cannot serve the call; the next one runs.

    Inputs:
    - reason: why the strategy was skipped

    Outputs:
    - Exception instance
    """


def run_chain(strategies: Sequence[Tuple[str, Strategy]]) -> OpResult:
    """Brief: Try strategies in order; the first one that answers wins.

    Inputs:
      - strategies: (name, callable) pairs. A callable returns an OpResult
        (success or terminal failure) or raises StrategyUnavailable.

    Outputs:
      - OpResult from the first strategy that answered, or
        transport_unreachable carrying the last skip reason.

    Example:
      >>> def down():
      ...     raise StrategyUnavailable("offline")
      >>> run_chain([("a", down), ("b", lambda: OpResult.success("done"))]).message
      'done'
    """

    reason = "no strategies available"
    for name, strategy in strategies:
        try:
            result = strategy()
        except StrategyUnavailable as exc:
            reason = f"{name}: {exc}"
            logger.info("Strategy %s unavailable: %s", name, exc)
            continue
        logger.debug("Strategy %s answered: ok=%s", name, result.ok)
        return result
    logger.error("Privileged engine unreachable (%s)", reason)
    return OpResult.failure(
        ErrorKind.TRANSPORT_UNREACHABLE, f"Privileged engine unreachable ({reason})"
    )


class ChannelManager:
    """Reach the privileged engine with reconnection and escalation.

    Inputs (constructor):
      - client_factory: Callable(on_disconnect) -> EngineClient (not connected).
      - installer: Optional ServiceInstaller used when the engine is missing.
      - elevator: Optional OneShotElevator used as the last resort.

    Outputs:
      - apply/clear/flush return OpResult; *_async variants return Futures.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        installer: Optional[ServiceInstaller] = None,
        elevator: Optional[OneShotElevator] = None,
    ) -> None:
        self._client_factory = client_factory
        self.installer = installer
        self.elevator = elevator
        self._client: Optional[EngineClient] = None
        self._state = ChannelState.DISCONNECTED
        self._connect_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dnsswitch-channel")

    @property
    def state(self) -> ChannelState:
        return self._state

    def _on_disconnect(self) -> None:
        logger.info("Engine connection lost; will reconnect on next call")
        self._state = ChannelState.DISCONNECTED

    def _connect(self) -> EngineClient:
        """Connect and handshake; raises TransportError when unreachable."""
        with self._connect_lock:
            if self._client is not None and self._client.connected and self._state is ChannelState.READY:
                return self._client
            self._state = ChannelState.CONNECTING
            client = self._client_factory(self._on_disconnect)
            try:
                client.connect()
                if not client.is_ready():
                    raise TransportError("Engine reported not ready")
            except TransportError:
                client.close()
                self._client = None
                self._state = ChannelState.DISCONNECTED
                raise
            self._client = client
            self._state = ChannelState.READY
            logger.info("Connected to privileged engine")
            return client

    # -- strategies -----------------------------------------------------------

    @staticmethod
    def _send(client: EngineClient, op: str, servers: List[str]) -> OpResult:
        """Call the engine; a lost apply/clear is final and never re-sent."""
        try:
            return client.call(op, servers)
        except RequestLost as exc:
            if op not in MUTATING_OPS:
                raise StrategyUnavailable(str(exc)) from exc
            logger.error("Engine did not confirm %s: %s", op, exc)
            return OpResult.failure(
                ErrorKind.TRANSPORT_UNREACHABLE,
                f"Engine did not confirm {op}; it may still be in progress ({exc})",
            )
        except TransportError as exc:
            raise StrategyUnavailable(str(exc)) from exc

    def _via_existing(self, op: str, servers: List[str]) -> Strategy:
        def strategy() -> OpResult:
            client = self._client
            if client is None or self._state is not ChannelState.READY:
                raise StrategyUnavailable("no live connection")
            return self._send(client, op, servers)

        return strategy

    def _via_connect(self, op: str, servers: List[str]) -> Strategy:
        def strategy() -> OpResult:
            try:
                client = self._connect()
            except TransportError as exc:
                if self.installer is None or self.installer.is_installed():
                    raise StrategyUnavailable(str(exc)) from exc
                logger.info("Engine not installed; requesting installation")
                try:
                    outcome = self.installer.install()
                except InstallError as install_exc:
                    raise StrategyUnavailable(str(install_exc)) from install_exc
                if outcome is EscalationOutcome.DENIED:
                    raise StrategyUnavailable("engine installation was not authorized")
                try:
                    client = self._connect()
                except TransportError as retry_exc:
                    raise StrategyUnavailable(
                        f"engine unreachable after installation: {retry_exc}"
                    ) from retry_exc
            return self._send(client, op, servers)

        return strategy

    def _via_oneshot(self, op: str, servers: List[str]) -> Strategy:
        def strategy() -> OpResult:
            if self.elevator is None:
                raise StrategyUnavailable("one-shot elevation not configured")
            logger.info("Falling back to one-shot elevation for %s", op)
            return self.elevator.run(op, servers)

        return strategy

    def _call(self, op: str, servers: Optional[List[str]] = None) -> OpResult:
        args = list(servers or [])
        return run_chain(
            [
                ("existing connection", self._via_existing(op, args)),
                ("connect or install", self._via_connect(op, args)),
                ("one-shot elevation", self._via_oneshot(op, args)),
            ]
        )

    # -- public operations ----------------------------------------------------

    def apply(self, servers: Sequence[str]) -> OpResult:
        """Brief: Apply servers through whichever path reaches the engine.

        Inputs:
          - servers: Free-form server strings.

        Outputs:
          - OpResult; no_valid_servers is decided locally without escalating.
        """

        servers = [str(s) for s in servers]
        if not classify(servers):
            return OpResult.failure(
                ErrorKind.NO_VALID_SERVERS, "No valid DNS servers after normalization"
            )
        return self._call("apply", servers)

    def clear(self) -> OpResult:
        return self._call("clear")

    def flush(self) -> OpResult:
        return self._call("flush")

    def status(self) -> OpResult:
        """Brief: Engine status; only a reachable engine can answer."""
        return run_chain(
            [
                ("existing connection", self._via_existing("status", [])),
                ("connect", self._status_connect),
            ]
        )

    def _status_connect(self) -> OpResult:
        try:
            return self._connect().call("status")
        except TransportError as exc:
            raise StrategyUnavailable(str(exc)) from exc

    def apply_async(self, servers: Sequence[str]) -> "Future[OpResult]":
        return self._executor.submit(self.apply, list(servers))

    def clear_async(self) -> "Future[OpResult]":
        return self._executor.submit(self.clear)

    def flush_async(self) -> "Future[OpResult]":
        return self._executor.submit(self.flush)

    # -- authorization --------------------------------------------------------

    def authorize(self) -> EscalationOutcome:
        """Brief: Make sure the engine is installed and reachable.

        Outputs:
          - ALREADY_AUTHORIZED when the engine answers without prompting,
            NEWLY_AUTHORIZED after a successful install, DENIED otherwise.
        """

        try:
            self._connect()
            return EscalationOutcome.ALREADY_AUTHORIZED
        except TransportError as exc:
            logger.info("Engine unreachable (%s); installing", exc)

        if self.installer is None:
            return EscalationOutcome.DENIED
        try:
            outcome = self.installer.install(force=True)
        except InstallError as exc:
            logger.error("%s", exc)
            return EscalationOutcome.DENIED
        if outcome is EscalationOutcome.DENIED:
            return outcome

        try:
            self._connect()
        except TransportError as exc:
            logger.error("Engine still unreachable after installation: %s", exc)
            return EscalationOutcome.DENIED
        return outcome

    def ensure_authorized(self) -> bool:
        return self.authorize() is not EscalationOutcome.DENIED

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        with self._connect_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
            self._state = ChannelState.DISCONNECTED
