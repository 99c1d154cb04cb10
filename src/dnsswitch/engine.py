"""Privileged configuration engine.

Brief:
  Receives resolver-change requests, classifies them, and drives the system
  DNS backend, the managed-profile manager and the proxy supervisor. Mutating
  operations run one at a time under a single lock; the engine owns the
  record of which mechanism currently carries this system's change.

Inputs:
  - Request models from dnsswitch.ipc.protocol (or plain method calls)

Outputs:
  - OpResult for every operation; unexpected exceptions become internal_error.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, List, Optional, Sequence

from .classifier import classify
from .config.config_parser import Settings
from .models import (
    ActiveMode,
    ApplyRequest,
    ErrorKind,
    OpResult,
    ProfileProtocol,
    ServerKind,
    ServerSpec,
    spec_strings,
)
from .system.commands import CommandRunner
from .system.network import SystemDNSBackend
from .system.profiles import ProfileManager
from .system.proxy import ProxySupervisor

logger = logging.getLogger(__name__)

MIXED_REJECT = "reject"
MIXED_PRIORITY = "priority"

_KIND_LABEL = {ServerKind.DOH: "DoH", ServerKind.DOT: "DoT"}
_KIND_PROTOCOL = {ServerKind.DOH: ProfileProtocol.HTTPS, ServerKind.DOT: ProfileProtocol.TLS}


class PrivilegedEngine:
    """Serialised apply/clear/flush over the system configuration boundary.

    Inputs (constructor):
      - backend: SystemDNSBackend (or compatible) for resolver lists and flush.
      - profiles: Optional ProfileManager for the native encrypted-DNS path.
      - proxy: Optional ProxySupervisor for the local forwarding proxy.
      - mixed_kinds: "reject" or "priority" for requests mixing IP/DoH/DoT.
      - strategy: "auto", "profile" or "proxy" for DoH/DoT requests.
      - profile_protocols: Protocols the profile path may carry.
      - profiles_available: Override for native profile support detection.
      - probe_name: Optional name resolved through the proxy after it starts.

    Example:
      >>> # engine = build_engine(load_settings())
      >>> # engine.apply(["1.1.1.1"]).as_tuple()
    """

    def __init__(
        self,
        backend: SystemDNSBackend,
        profiles: Optional[ProfileManager] = None,
        proxy: Optional[ProxySupervisor] = None,
        *,
        mixed_kinds: str = MIXED_REJECT,
        strategy: str = "auto",
        profile_protocols: Sequence[str] = ("HTTPS", "TLS"),
        profiles_available: Optional[bool] = None,
        probe_name: Optional[str] = None,
    ) -> None:
        if mixed_kinds not in (MIXED_REJECT, MIXED_PRIORITY):
            raise ValueError(f"mixed_kinds must be 'reject' or 'priority', got {mixed_kinds!r}")
        if strategy not in ("auto", "profile", "proxy"):
            raise ValueError(f"strategy must be auto, profile or proxy, got {strategy!r}")
        self.backend = backend
        self.profiles = profiles
        self.proxy = proxy
        self.mixed_kinds = mixed_kinds
        self.strategy = strategy
        self.profile_protocols = {ProfileProtocol(p) for p in profile_protocols}
        self._profiles_available = profiles_available
        self.probe_name = probe_name

        self._lock = threading.Lock()
        self.mode = ActiveMode.NONE
        self.servers: List[str] = []

    # -- dispatch -------------------------------------------------------------

    def handle(self, request: Any) -> OpResult:
        """Brief: Execute one IPC request; never raises.

        Inputs:
          - request: Model with an `op` attribute (and `servers` for apply).

        Outputs:
          - OpResult
        """

        op = getattr(request, "op", None)
        try:
            if op == "is_ready":
                return self.is_ready()
            if op == "apply":
                return self.apply(list(getattr(request, "servers", []) or []))
            if op == "clear":
                return self.clear()
            if op == "flush":
                return self.flush()
            if op == "status":
                return self.status()
        except Exception as exc:
            logger.exception("Unhandled error during %s", op)
            return OpResult.failure(ErrorKind.INTERNAL_ERROR, f"Internal error during {op}: {exc}")
        return OpResult.failure(ErrorKind.PROTOCOL_ERROR, f"Unknown operation: {op!r}")

    def is_ready(self) -> OpResult:
        return OpResult.success("ready", data={"pid": os.getpid()})

    # -- helpers --------------------------------------------------------------

    @property
    def profiles_available(self) -> bool:
        if self.profiles is None:
            return False
        if self._profiles_available is None:
            self._profiles_available = self.profiles.is_supported()
        return self._profiles_available

    def _use_profile(self, protocol: ProfileProtocol) -> bool:
        if self.strategy == "proxy":
            return False
        if self.strategy == "profile":
            return True
        return self.profiles_available and protocol in self.profile_protocols

    def _retire_profile(self) -> None:
        if self.profiles is not None and self.profiles_available:
            self.profiles.remove_all()

    def _retire_proxy(self) -> None:
        if self.proxy is not None:
            self.proxy.stop()

    def _record(self, mode: ActiveMode, servers: Sequence[str] = ()) -> None:
        self.mode = mode
        self.servers = list(servers)
        logger.debug("Active mode: %s %s", mode.value, self.servers)

    def _select(self, servers: Sequence[str]):
        """Return (kind, specs) to act on, or an OpResult rejecting the request."""
        specs = classify(servers)
        if not specs:
            logger.warning("No valid DNS servers in %r", list(servers))
            return OpResult.failure(
                ErrorKind.NO_VALID_SERVERS, "No valid DNS servers after normalization"
            )

        request = ApplyRequest(specs)
        kind = request.priority_kind()
        if request.is_mixed:
            present = ", ".join(k.value for k in request.kinds)
            if self.mixed_kinds == MIXED_REJECT:
                message = (
                    f"Mixed server kinds in one request ({present}); "
                    "submit plain IPs, DoH or DoT separately"
                )
                logger.warning(message)
                return OpResult.failure(ErrorKind.MIXED_SERVER_KINDS, message)
            dropped = [s for s in specs if s.kind != kind]
            logger.warning(
                "Mixed server kinds (%s): using %s, dropping %s",
                present,
                kind.value,
                spec_strings(dropped),
            )
        return kind, request.select(kind)

    # -- operations -----------------------------------------------------------

    def apply(self, servers: Sequence[str]) -> OpResult:
        """Brief: Classify servers and apply them with the matching mechanism.

        Inputs:
          - servers: Free-form server strings (IPs, https:// URLs, tls:// hosts,
            bare hostnames, doh:/dot: shorthands).

        Outputs:
          - OpResult; see PrivilegedEngine for the mechanisms involved.
        """

        selected = self._select(servers)
        if isinstance(selected, OpResult):
            return selected
        kind, specs = selected

        with self._lock:
            if kind is ServerKind.IP:
                return self._apply_ips(spec_strings(specs))
            return self._apply_encrypted(kind, specs)

    def _apply_ips(self, ips: List[str]) -> OpResult:
        self._retire_profile()
        self._retire_proxy()
        result = self.backend.set_servers(ips)
        if result.ok or result.error is ErrorKind.VERIFICATION_MISMATCH:
            self._record(ActiveMode.IP, ips)
        elif self.mode in (ActiveMode.PROFILE, ActiveMode.PROXY):
            self._record(ActiveMode.NONE)
        return result

    def _apply_encrypted(self, kind: ServerKind, specs: List[ServerSpec]) -> OpResult:
        target = specs[0].normalized
        if len(specs) > 1:
            logger.info(
                "Only one %s server is used; ignoring %s",
                _KIND_LABEL[kind],
                spec_strings(specs[1:]),
            )

        protocol = _KIND_PROTOCOL[kind]
        if self._use_profile(protocol):
            return self._apply_profile(kind, protocol, target)
        return self._apply_proxy(kind, target)

    def _apply_profile(self, kind: ServerKind, protocol: ProfileProtocol, target: str) -> OpResult:
        if self.profiles is None:
            return OpResult.failure(
                ErrorKind.PROFILE_INSTALL_REJECTED, "No profile manager configured"
            )

        was_proxy = self.mode is ActiveMode.PROXY
        self._retire_proxy()
        if was_proxy:
            cleared = self.backend.clear_servers()
            if not cleared.ok:
                logger.warning("Clearing proxy resolver failed: %s", cleared.message)

        result = self.profiles.install(protocol, target)
        if not result.ok:
            self._record(ActiveMode.NONE)
            return result

        self.backend.flush_cache()
        self._record(ActiveMode.PROFILE, [target])
        return OpResult.success(
            f"{_KIND_LABEL[kind]} active via managed profile: {target}",
            data=result.data,
        )

    def _apply_proxy(self, kind: ServerKind, target: str) -> OpResult:
        if self.proxy is None:
            return OpResult.failure(
                ErrorKind.PROXY_LAUNCH_FAILED, "No resolver proxy configured"
            )

        self._retire_profile()
        upstream = target if kind is ServerKind.DOH else f"tls://{target}"
        started = self.proxy.start(upstream)
        if not started.ok:
            if self.mode is ActiveMode.PROXY:
                self._record(ActiveMode.NONE)
            return started

        applied = self.backend.set_servers([self.proxy.loopback_address])
        if not applied.ok and applied.error is not ErrorKind.VERIFICATION_MISMATCH:
            logger.error("Pointing system at proxy failed; stopping proxy")
            self.proxy.stop()
            self._record(ActiveMode.NONE)
            return applied

        self._record(ActiveMode.PROXY, [target])
        message = f"{_KIND_LABEL[kind]} active via local proxy: {target}"
        if not applied.ok:
            return OpResult.failure(
                ErrorKind.VERIFICATION_MISMATCH, f"{message} ({applied.message})", applied.data
            )
        if self.probe_name:
            probe = self.proxy.probe(self.probe_name)
            if not probe.ok:
                logger.warning("Proxy probe failed: %s", probe.message)
                message += f" ({probe.message})"
        return OpResult.success(message, data={"proxy": self.proxy.describe()})

    def clear(self) -> OpResult:
        """Brief: Remove every change this system made and restore defaults."""
        with self._lock:
            self._retire_profile()
            self._retire_proxy()
            result = self.backend.clear_servers()
            if result.ok:
                self._record(ActiveMode.NONE)
            return result

    def flush(self) -> OpResult:
        with self._lock:
            return self.backend.flush_cache()

    def status(self) -> OpResult:
        """Brief: Read-only snapshot of the engine's view and the live resolvers."""
        data: Dict[str, Any] = {
            "mode": self.mode.value,
            "servers": list(self.servers),
            "profile": None,
            "proxy": self.proxy.describe() if self.proxy is not None else None,
            "active_resolvers": self.backend.active_resolvers(),
        }
        if self.profiles is not None and self.profiles.current is not None:
            data["profile"] = self.profiles.current.to_dict()
        label = self.mode.value
        if self.servers:
            label += ": " + ", ".join(self.servers)
        return OpResult.success(f"Mode {label}", data=data)

    def shutdown(self) -> None:
        """Brief: Stop the supervised proxy when the engine exits.

        The loopback resolver is cleared as well so the system does not keep
        pointing at a listener that is gone.
        """
        with self._lock:
            self._retire_proxy()
            if self.mode is ActiveMode.PROXY:
                result = self.backend.clear_servers()
                logger.info("Cleared proxy resolver on shutdown: %s", result.message)
                self._record(ActiveMode.NONE)


def build_engine(settings: Settings, *, detach_proxy: bool = False) -> PrivilegedEngine:
    """Brief: Wire the engine and its backends from Settings.

    Inputs:
      - settings: Loaded Settings.
      - detach_proxy: Start the proxy in its own session (one-shot runs exit
        while the proxy keeps serving).

    Outputs:
      - PrivilegedEngine
    """

    runner = CommandRunner(timeout=settings.network.command_timeout)
    backend = SystemDNSBackend(
        runner,
        networksetup=settings.network.networksetup,
        scutil=settings.network.scutil,
        flush_commands=settings.network.flush_commands,
        rollback_on_failure=settings.network.rollback_on_failure,
    )
    enc = settings.encrypted_dns
    profiles = ProfileManager(
        runner,
        profiles_binary=enc.profiles_binary,
        identifier_prefix=enc.identifier_prefix,
        bootstrap_limit=enc.bootstrap_limit,
    )
    px = settings.proxy
    proxy = ProxySupervisor(
        binary=px.binary,
        template=px.template,
        runtime_dir=px.runtime_dir,
        listen_host=px.listen_host,
        listen_port=px.listen_port,
        start_timeout=px.start_timeout,
        poll_interval=px.poll_interval,
        grace_period=px.grace_period,
        output_lines=px.output_lines,
        supports_dot=px.supports_dot,
        detach=detach_proxy,
        runner=runner,
    )
    return PrivilegedEngine(
        backend,
        profiles,
        proxy,
        mixed_kinds=settings.engine.mixed_kinds,
        strategy=enc.strategy,
        profile_protocols=enc.profile_protocols,
        probe_name=px.probe_name,
    )
