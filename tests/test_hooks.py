import shlex
import sys
from pathlib import Path

import pytest

from flagmon.hooks import command_hook, run_hook_command


def test_command_hook_runs_command_with_path(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    script = f"import sys, pathlib; pathlib.Path({str(marker)!r}).write_text(sys.argv[1])"
    hook = command_hook(f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}")
    assert hook is not None

    hook(tmp_path / "finished.pcap")

    assert marker.read_text() == str(tmp_path / "finished.pcap")


def test_command_hook_is_none_for_empty_command() -> None:
    assert command_hook(None) is None
    assert command_hook("   ") is None


def test_missing_executable_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    assert run_hook_command(["/nonexistent/flagmon-post-rotate", "x.pcap"]) is None
    assert "Hook could not run" in caplog.text


def test_failing_command_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    code = run_hook_command([sys.executable, "-c", "import sys; sys.exit(3)"])
    assert code == 3
    assert "Hook failed" in caplog.text
