"""Privilege escalation: launchd service installation and one-shot elevation.

Brief:
  ServiceInstaller registers the engine as a launchd daemon through a single
  user-confirmed elevation prompt. OneShotElevator runs one operation through
  the same prompt without the long-lived engine, using the same engine code
  in a short-lived elevated child.
"""

from __future__ import annotations

import logging
import os
import plistlib
import shlex
import sys
import tempfile
import time
from typing import List, Optional, Sequence

from .ipc.protocol import ProtocolError, decode_response
from .models import ErrorKind, EscalationOutcome, OpResult
from .system.commands import CommandResult, CommandRunner, Runner

logger = logging.getLogger(__name__)

ELEVATION_CANCELLED_MARKERS = ("-128", "User canceled", "User cancelled")
MODULE_ENTRY = "dnsswitch.main"


class InstallError(Exception):
    """
    Brief: Service installation failed for a reason other than user denial.

    Inputs:
    - message: installer output

    Outputs:
    - Exception instance
    """


def applescript_quote(text: str) -> str:
    """Brief: Quote text as an AppleScript string literal (backslash and double quote escaped)."""
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def elevated_argv(osascript: str, script: str) -> List[str]:
    """Brief: osascript argv that runs a shell script with administrator privileges."""
    return [
        osascript,
        "-e",
        f"do shell script {applescript_quote(script)} "
        "with administrator privileges without altering line endings",
    ]


def elevation_cancelled(result: CommandResult) -> bool:
    return not result.success and any(m in result.output for m in ELEVATION_CANCELLED_MARKERS)


def engine_command(python: str, config_path: Optional[str], *args: str) -> List[str]:
    """Brief: argv running the dnsswitch CLI module with an optional config."""
    argv = [python, "-m", MODULE_ENTRY]
    if config_path:
        argv += ["--config", config_path]
    argv += list(args)
    return argv


class ServiceInstaller:
    """Install or remove the engine as a launchd system daemon.

    Inputs (constructor):
      - label: launchd label, also the plist file stem.
      - plist_dir: Directory holding system daemon plists.
      - python: Interpreter that runs the engine (defaults to sys.executable).
      - config_path: Config file passed to the engine, if any.
      - log_path: stdout/stderr destination for the daemon.
      - osascript / launchctl: Tool paths.
      - post_install_delay: Seconds to wait for launchd to start the daemon.
      - runner: Command runner.
    """

    def __init__(
        self,
        *,
        label: str = "com.dnsswitch.engine",
        plist_dir: str = "/Library/LaunchDaemons",
        python: Optional[str] = None,
        config_path: Optional[str] = None,
        log_path: Optional[str] = None,
        osascript: str = "/usr/bin/osascript",
        launchctl: str = "/bin/launchctl",
        post_install_delay: float = 1.0,
        runner: Optional[Runner] = None,
    ) -> None:
        self.label = label
        self.plist_dir = plist_dir
        self.python = python or sys.executable
        self.config_path = config_path
        self.log_path = log_path
        self.osascript = osascript
        self.launchctl = launchctl
        self.post_install_delay = float(post_install_delay)
        self._run = runner or CommandRunner(timeout=300)

    @property
    def plist_path(self) -> str:
        return os.path.join(self.plist_dir, f"{self.label}.plist")

    def build_plist(self) -> bytes:
        job = {
            "Label": self.label,
            "ProgramArguments": engine_command(self.python, self.config_path, "engine"),
            "RunAtLoad": True,
            "KeepAlive": True,
        }
        if self.log_path:
            job["StandardOutPath"] = self.log_path
            job["StandardErrorPath"] = self.log_path
        return plistlib.dumps(job, fmt=plistlib.FMT_XML)

    def is_installed(self) -> bool:
        if not os.path.exists(self.plist_path):
            return False
        res = self._run([self.launchctl, "print", f"system/{self.label}"])
        return res.success

    def _install_script(self, staged: str) -> str:
        q = shlex.quote
        dest = q(self.plist_path)
        return " && ".join(
            [
                f"/bin/mkdir -p {q(self.plist_dir)}",
                f"/usr/bin/install -m 644 -o root -g wheel {q(staged)} {dest}",
                f"({q(self.launchctl)} bootout system/{q(self.label)} 2>/dev/null || true)",
                f"{q(self.launchctl)} bootstrap system {dest}",
            ]
        )

    def install(self, force: bool = False) -> EscalationOutcome:
        """Brief: Register the engine with launchd behind one elevation prompt.

        Inputs:
          - force: Reinstall even when the service already looks registered.

        Outputs:
          - EscalationOutcome: ALREADY_AUTHORIZED, NEWLY_AUTHORIZED or DENIED.

        Raises:
          - InstallError: the elevated script failed for another reason.
        """

        if not force and self.is_installed():
            return EscalationOutcome.ALREADY_AUTHORIZED

        fd, staged = tempfile.mkstemp(prefix="dnsswitch-", suffix=".plist")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.build_plist())
            os.chmod(staged, 0o644)
            res = self._run(elevated_argv(self.osascript, self._install_script(staged)))
        finally:
            try:
                os.unlink(staged)
            except OSError:
                pass

        if elevation_cancelled(res):
            logger.warning("Engine installation was not authorized")
            return EscalationOutcome.DENIED
        if not res.success:
            detail = res.output.strip() or f"exit status {res.returncode}"
            logger.error("Engine installation failed: %s", detail)
            raise InstallError(f"Engine installation failed: {detail}")

        logger.info("Installed %s as %s", self.label, self.plist_path)
        if self.post_install_delay:
            time.sleep(self.post_install_delay)
        return EscalationOutcome.NEWLY_AUTHORIZED

    def uninstall(self) -> OpResult:
        """Brief: Unload the daemon and delete its plist (elevated)."""
        q = shlex.quote
        script = (
            f"({q(self.launchctl)} bootout system/{q(self.label)} 2>/dev/null || true)"
            f" && /bin/rm -f {q(self.plist_path)}"
        )
        res = self._run(elevated_argv(self.osascript, script))
        if elevation_cancelled(res):
            return OpResult.failure(ErrorKind.AUTHORIZATION_DENIED, "Authorization denied")
        if not res.success:
            return OpResult.failure(
                ErrorKind.INTERNAL_ERROR,
                f"Engine removal failed: {res.output.strip() or res.returncode}",
            )
        logger.info("Removed %s", self.label)
        return OpResult.success(f"Removed {self.label}")


class OneShotElevator:
    """Run a single operation in an elevated child process.

    Inputs (constructor):
      - python: Interpreter for the child (defaults to sys.executable).
      - config_path: Config file passed to the child, if any.
      - osascript: Tool path.
      - runner: Command runner.
    """

    def __init__(
        self,
        *,
        python: Optional[str] = None,
        config_path: Optional[str] = None,
        osascript: str = "/usr/bin/osascript",
        runner: Optional[Runner] = None,
    ) -> None:
        self.python = python or sys.executable
        self.config_path = config_path
        self.osascript = osascript
        self._run = runner or CommandRunner(timeout=300)

    def command(self, op: str, servers: Sequence[str] = ()) -> List[str]:
        return engine_command(self.python, self.config_path, "oneshot", op, *servers)

    def run(self, op: str, servers: Sequence[str] = ()) -> OpResult:
        """Brief: Execute op elevated and decode the child's JSON reply.

        Inputs:
          - op: apply, clear or flush.
          - servers: Server strings for apply.

        Outputs:
          - OpResult from the child, authorization_denied on cancel, or
            internal_error when no reply could be read.
        """

        script = shlex.join(self.command(op, servers))
        res = self._run(elevated_argv(self.osascript, script))
        if elevation_cancelled(res):
            logger.warning("One-shot %s was not authorized", op)
            return OpResult.failure(ErrorKind.AUTHORIZATION_DENIED, "Authorization denied")

        lines = [ln for ln in res.output.splitlines() if ln.strip()]
        if lines:
            try:
                return decode_response(lines[-1].strip().encode("utf-8")).to_result()
            except ProtocolError as exc:
                logger.debug("Unreadable one-shot reply: %s", exc)

        detail = "\n".join(lines[-5:]) or f"exit status {res.returncode}"
        logger.error("One-shot %s failed: %s", op, detail)
        return OpResult.failure(ErrorKind.INTERNAL_ERROR, f"One-shot {op} failed: {detail}")
