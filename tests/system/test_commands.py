"""
Brief: Tests for dnsswitch.system.commands.CommandRunner.

Inputs:
  - None

Outputs:
  - None
"""

import shutil

import pytest

from dnsswitch.system.commands import EXIT_NOT_FOUND, EXIT_TIMEOUT, CommandRunner


def test_run_captures_merged_output():
    result = CommandRunner(timeout=5)(["sh", "-c", "echo out; echo err 1>&2; exit 3"])
    assert result.returncode == 3
    assert not result.success
    assert "out" in result.output and "err" in result.output


def test_run_passes_stdin_and_stringifies_args():
    result = CommandRunner().run(["sh", "-c", 'cat; echo "$0"', 42], input_text="hello\n")
    assert result.success
    assert result.output == "hello\n42\n"


def test_missing_binary_maps_to_127(tmp_path):
    result = CommandRunner().run([str(tmp_path / "no-such-tool")])
    assert result.returncode == EXIT_NOT_FOUND
    assert result.output.startswith(f"Failed to run {tmp_path / 'no-such-tool'}")


@pytest.mark.skipif(shutil.which("sleep") is None, reason="sleep not available")
def test_timeout_maps_to_124():
    """
    Brief: A command outliving its timeout is reported, not raised.

    Inputs:
      - sleep 5 with a 0.2 s per-call timeout

    Outputs:
      - None: Asserts returncode and message
    """
    result = CommandRunner(timeout=30).run(["sleep", "5"], timeout=0.2)
    assert result.returncode == EXIT_TIMEOUT
    assert result.output == "sleep timed out after 0.2s"
