"""Encrypted-DNS managed configuration profiles.

Brief:
  ProfileManager builds a com.apple.dnsSettings.managed payload for a DoH URL
  or DoT host, installs it with the `profiles` tool, and removes previously
  installed profiles. Removal only ever touches profiles whose identifier
  carries this system's prefix and whose payload is a managed DNS setting.
"""

from __future__ import annotations

import logging
import os
import platform
import plistlib
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from xml.parsers.expat import ExpatError

from ..classifier import DOT_PREFIX
from ..models import ErrorKind, ManagedProfile, OpResult, ProfileProtocol
from .commands import CommandRunner, Runner
from .network import resolve_host

logger = logging.getLogger(__name__)

DNS_SETTINGS_PAYLOAD_TYPE = "com.apple.dnsSettings.managed"
DEFAULT_IDENTIFIER_PREFIX = "com.dnsswitch.dns"


def build_payload(profile: ManagedProfile, display_name: str = "dnsswitch") -> bytes:
    """Brief: Serialize a ManagedProfile into a configuration profile plist.

    Inputs:
      - profile: ManagedProfile describing protocol, target and bootstrap IPs.
      - display_name: Name shown in System Settings.

    Outputs:
      - bytes: XML plist of a top-level Configuration payload that wraps one
        managed DNS settings payload.

    Example:
      >>> p = ManagedProfile("com.dnsswitch.dns.encrypted", ProfileProtocol.HTTPS, "https://dns.example.com/dns-query")
      >>> b"com.apple.dnsSettings.managed" in build_payload(p)
      True
    """

    settings: Dict[str, Any] = {"DNSProtocol": profile.protocol.value}
    if profile.protocol is ProfileProtocol.HTTPS:
        settings["ServerURL"] = profile.target
    else:
        settings["ServerName"] = profile.target
    if profile.bootstrap_addresses:
        settings["ServerAddresses"] = list(profile.bootstrap_addresses)

    inner = {
        "PayloadType": DNS_SETTINGS_PAYLOAD_TYPE,
        "PayloadIdentifier": f"{profile.identifier}.settings",
        "PayloadUUID": str(uuid.uuid4()).upper(),
        "PayloadVersion": 1,
        "PayloadDisplayName": f"{display_name} encrypted DNS",
        "DNSSettings": settings,
    }
    outer = {
        "PayloadType": "Configuration",
        "PayloadIdentifier": profile.identifier,
        "PayloadUUID": str(uuid.uuid4()).upper(),
        "PayloadVersion": 1,
        "PayloadScope": "System",
        "PayloadDisplayName": f"{display_name} ({profile.protocol.value}: {profile.target})",
        "PayloadContent": [inner],
    }
    return plistlib.dumps(outer, fmt=plistlib.FMT_XML)


def owned_profile_identifiers(listing: bytes, prefix: str) -> List[str]:
    """Brief: Pick this system's managed DNS profiles out of a profiles listing.

    Inputs:
      - listing: XML plist from `profiles -C -o stdout-xml`.
      - prefix: Identifier namespace owned by this system.

    Outputs:
      - list[str]: Identifiers that start with prefix AND contain a managed DNS
        settings payload. Unparseable input yields [].
    """

    try:
        data = plistlib.loads(listing)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as exc:
        logger.warning("Could not parse profiles listing: %s", exc)
        return []

    groups: List[Any] = []
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                groups.extend(value)
    elif isinstance(data, list):
        groups = data

    owned: List[str] = []
    for entry in groups:
        if not isinstance(entry, dict):
            continue
        ident = str(entry.get("ProfileIdentifier", ""))
        if not (ident == prefix or ident.startswith(prefix + ".")):
            continue
        items = entry.get("ProfileItems") or []
        if any(
            isinstance(item, dict) and item.get("PayloadType") == DNS_SETTINGS_PAYLOAD_TYPE
            for item in items
        ):
            if ident not in owned:
                owned.append(ident)
    return owned


def native_profiles_supported(profiles_binary: str = "/usr/bin/profiles") -> bool:
    """Brief: True on macOS 11+ with the profiles tool present."""
    if platform.system() != "Darwin":
        return False
    release = platform.mac_ver()[0]
    try:
        major = int(release.split(".")[0])
    except (ValueError, IndexError):
        return False
    return major >= 11 and Path(profiles_binary).exists()


class ProfileManager:
    """Install and remove this system's encrypted-DNS configuration profile.

    Inputs (constructor):
      - runner: Callable compatible with CommandRunner.run.
      - profiles_binary: Path to the profiles tool.
      - identifier_prefix: Namespace for identifiers created by this system.
      - bootstrap_limit: Maximum bootstrap addresses embedded in the payload.
      - resolver: Callable(host) -> list[str] for bootstrap resolution.
      - work_dir: Directory for the temporary payload file.
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        *,
        profiles_binary: str = "/usr/bin/profiles",
        identifier_prefix: str = DEFAULT_IDENTIFIER_PREFIX,
        bootstrap_limit: int = 4,
        resolver: Optional[Callable[[str], List[str]]] = None,
        work_dir: Optional[str] = None,
    ) -> None:
        self._run = runner or CommandRunner()
        self.profiles_binary = profiles_binary
        self.identifier_prefix = identifier_prefix.rstrip(".")
        self.bootstrap_limit = int(bootstrap_limit)
        self._resolve = resolver or (lambda host: resolve_host(host, self.bootstrap_limit))
        self.work_dir = work_dir
        self.current: Optional[ManagedProfile] = None

    @property
    def identifier(self) -> str:
        return f"{self.identifier_prefix}.encrypted"

    def is_supported(self) -> bool:
        return native_profiles_supported(self.profiles_binary)

    def list_owned(self) -> List[str]:
        res = self._run([self.profiles_binary, "-C", "-o", "stdout-xml"])
        if not res.success:
            logger.warning("Listing profiles failed: %s", res.output.strip())
            return []
        return owned_profile_identifiers(res.output.encode("utf-8"), self.identifier_prefix)

    def remove_all(self) -> None:
        """Brief: Remove every managed DNS profile owned by this system.

        Inputs: none
        Outputs: None; a profile that is already gone is not an error.
        """

        for ident in self.list_owned():
            res = self._run([self.profiles_binary, "-R", "-p", ident])
            if res.success:
                logger.info("Removed profile %s", ident)
            else:
                logger.warning("Removing profile %s failed: %s", ident, res.output.strip())
        self.current = None

    def _build(self, protocol: ProfileProtocol, target: str) -> ManagedProfile:
        if protocol is ProfileProtocol.TLS and target.lower().startswith(DOT_PREFIX):
            target = target[len(DOT_PREFIX) :]
        if protocol is ProfileProtocol.HTTPS:
            host = target.split("//", 1)[-1].split("/", 1)[0]
        else:
            host = target
        bootstrap = self._resolve(host)[: self.bootstrap_limit]
        if not bootstrap:
            logger.warning("No bootstrap addresses for %s; installing without them", host)
        return ManagedProfile(self.identifier, protocol, target, bootstrap)

    def install(self, protocol: ProfileProtocol, target: str) -> OpResult:
        """Brief: Replace this system's profile with one for target.

        Inputs:
          - protocol: ProfileProtocol.HTTPS (DoH URL) or ProfileProtocol.TLS (DoT host).
          - target: DoH URL or DoT hostname.

        Outputs:
          - OpResult: success when the installer exits 0; otherwise
            profile_install_rejected with the installer output verbatim.
        """

        self.remove_all()
        profile = self._build(protocol, target)
        payload = build_payload(profile)

        fd, path = tempfile.mkstemp(prefix="dnsswitch-", suffix=".mobileconfig", dir=self.work_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            res = self._run([self.profiles_binary, "-I", "-F", path])
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass

        if not res.success:
            detail = res.output.strip() or f"exit status {res.returncode}"
            logger.error("Profile install rejected: %s", detail)
            return OpResult.failure(
                ErrorKind.PROFILE_INSTALL_REJECTED, f"Profile install rejected: {detail}"
            )

        self.current = profile
        boot = ", ".join(profile.bootstrap_addresses) or "none"
        logger.info("Installed profile %s for %s", profile.identifier, target)
        return OpResult.success(
            f"Profile installed for {target} (bootstrap: {boot})",
            data={"profile": profile.to_dict()},
        )
