"""Thin subprocess wrapper used for every external system tool.

Brief:
  CommandRunner.run() executes a command with merged stdout/stderr and a
  timeout and always returns a CommandResult; a missing binary or a timeout
  becomes a failed result instead of an exception so callers can report the
  tool output verbatim.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

# Conventional shell exit codes for "command not found" and "timed out".
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass
class CommandResult:
    """Brief: Outcome of one external command.

    Inputs:
      - returncode: Process exit status.
      - output: Combined stdout/stderr text.
    """

    returncode: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run external commands with a default timeout.

    Inputs (constructor):
      - timeout: Default per-call timeout in seconds (None disables it).

    Example:
      >>> runner = CommandRunner(timeout=5)
      >>> runner(["/bin/echo", "hi"]).output.strip()  # doctest: +SKIP
      'hi'
    """

    def __init__(self, timeout: Optional[float] = 30.0) -> None:
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Brief: Execute argv and capture its combined output.

        Inputs:
          - argv: Command and arguments; never passed through a shell.
          - timeout: Optional override of the default timeout.
          - input_text: Optional text written to stdin.

        Outputs:
          - CommandResult; returncode 127 when the binary cannot be started,
            124 on timeout.
        """

        argv = [str(a) for a in argv]
        effective_timeout = self.timeout if timeout is None else timeout
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %ss", argv[0], effective_timeout)
            return CommandResult(
                EXIT_TIMEOUT, f"{argv[0]} timed out after {effective_timeout}s"
            )
        except OSError as exc:
            logger.warning("Failed to run %s: %s", argv[0], exc)
            return CommandResult(EXIT_NOT_FOUND, f"Failed to run {argv[0]}: {exc}")

        output = proc.stdout or ""
        if proc.returncode != 0:
            logger.debug("%s exited %d: %s", argv[0], proc.returncode, output.strip())
        return CommandResult(proc.returncode, output)

    __call__ = run


Runner = Callable[..., CommandResult]
