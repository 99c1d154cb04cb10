"""Core data types shared by the client, the privileged engine and backends.

Brief:
  Plain dataclasses and enums describing classified resolver entries, the
  uniform operation result, and the lifecycle states tracked by the channel
  manager, the profile manager and the proxy supervisor.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple


class ServerKind(str, enum.Enum):
    """Brief: Resolver entry kind after classification."""

    IP = "ip"
    DOH = "doh"
    DOT = "dot"


# Higher first: DoH is the easiest to verify instantly, plain IP the hardest.
KIND_PRIORITY: Tuple[ServerKind, ...] = (ServerKind.DOH, ServerKind.DOT, ServerKind.IP)


class ErrorKind(str, enum.Enum):
    """Brief: Failure taxonomy carried on OpResult.error and over IPC."""

    NO_VALID_SERVERS = "no_valid_servers"
    MIXED_SERVER_KINDS = "mixed_server_kinds"
    NO_NETWORK_INTERFACES = "no_network_interfaces"
    INTERFACE_FAILURE = "interface_failure"
    TRANSPORT_UNREACHABLE = "transport_unreachable"
    AUTHORIZATION_DENIED = "authorization_denied"
    PROFILE_INSTALL_REJECTED = "profile_install_rejected"
    PROXY_LAUNCH_FAILED = "proxy_launch_failed"
    PROXY_TIMEOUT = "proxy_timeout"
    VERIFICATION_MISMATCH = "verification_mismatch"
    PROTOCOL_ERROR = "protocol_error"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ServerSpec:
    """Brief: One resolver entry after classification.

    Inputs:
      - kind: ServerKind of the entry.
      - normalized: Canonical form (bare IP, full https:// URL, bare DoT host).
      - raw: Original input string; not part of equality.

    Example:
      >>> ServerSpec(ServerKind.IP, "1.1.1.1", raw=" 1.1.1.1 ") == ServerSpec(ServerKind.IP, "1.1.1.1")
      True
    """

    kind: ServerKind
    normalized: str
    raw: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.normalized


@dataclass
class ApplyRequest:
    """Brief: Ordered batch of classified servers submitted together.

    Inputs:
      - specs: ServerSpec list in first-seen order.

    Outputs:
      - ApplyRequest with helpers to inspect and select the kind acted upon.
    """

    specs: List[ServerSpec]

    @property
    def kinds(self) -> List[ServerKind]:
        """Return the distinct kinds present, ordered by KIND_PRIORITY."""
        present = {s.kind for s in self.specs}
        return [k for k in KIND_PRIORITY if k in present]

    @property
    def is_mixed(self) -> bool:
        return len(self.kinds) > 1

    def select(self, kind: ServerKind) -> List[ServerSpec]:
        return [s for s in self.specs if s.kind == kind]

    def priority_kind(self) -> Optional[ServerKind]:
        kinds = self.kinds
        return kinds[0] if kinds else None


@dataclass
class OpResult:
    """Brief: Uniform (ok, message) outcome of every privileged operation.

    Inputs:
      - ok: True on success.
      - message: Human-readable detail, never empty on failure.
      - error: Optional ErrorKind when ok is False (or a soft failure).
      - data: Optional structured payload (status snapshots).

    Example:
      >>> OpResult.failure(ErrorKind.NO_VALID_SERVERS, "nothing to do").as_tuple()
      (False, 'nothing to do')
    """

    ok: bool
    message: str = ""
    error: Optional[ErrorKind] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, message: str, data: Optional[Dict[str, Any]] = None) -> "OpResult":
        return cls(True, message, None, data)

    @classmethod
    def failure(
        cls, error: ErrorKind, message: str, data: Optional[Dict[str, Any]] = None
    ) -> "OpResult":
        return cls(False, message, error, data)

    def as_tuple(self) -> Tuple[bool, str]:
        return self.ok, self.message


class ChannelState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class EscalationOutcome(str, enum.Enum):
    ALREADY_AUTHORIZED = "already_authorized"
    NEWLY_AUTHORIZED = "newly_authorized"
    DENIED = "denied"


class ProfileProtocol(str, enum.Enum):
    HTTPS = "HTTPS"
    TLS = "TLS"


@dataclass
class ManagedProfile:
    """Brief: Record of the encrypted-DNS configuration profile this system installed.

    Inputs:
      - identifier: Stable, namespaced profile identifier used for removal.
      - protocol: ProfileProtocol.HTTPS or ProfileProtocol.TLS.
      - target: DoH URL or DoT hostname.
      - bootstrap_addresses: Plain IPs used to reach the target.
    """

    identifier: str
    protocol: ProfileProtocol
    target: str
    bootstrap_addresses: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "protocol": self.protocol.value,
            "target": self.target,
            "bootstrap_addresses": list(self.bootstrap_addresses),
        }


class ProxyState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"
    CRASHED = "crashed"


class ActiveMode(str, enum.Enum):
    """Brief: Which mechanism currently carries this system's resolver change."""

    NONE = "none"
    IP = "ip"
    PROFILE = "profile"
    PROXY = "proxy"


def spec_strings(specs: Sequence[ServerSpec]) -> List[str]:
    """Brief: Return the normalized strings of specs, preserving order."""
    return [s.normalized for s in specs]
