from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from flagmon.dump.pcap_writer import CloseHook

LOGGER = logging.getLogger(__name__)

DEFAULT_HOOK_TIMEOUT_SECONDS = 300.0


def run_hook_command(cmd: list[str], timeout: float = DEFAULT_HOOK_TIMEOUT_SECONDS) -> Optional[int]:
    """Run an external post-processing command. Failures are logged, never raised."""
    LOGGER.debug("Executing hook cmd=%s", cmd, extra={"category": "HOOKS"})
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.SubprocessError) as exc:
        LOGGER.warning("Hook could not run cmd=%s error=%s", cmd, exc, extra={"category": "HOOKS"})
        return None
    if proc.returncode != 0:
        LOGGER.warning(
            "Hook failed cmd=%s returncode=%s stderr=%s",
            cmd,
            proc.returncode,
            (proc.stderr or "")[:500],
            extra={"category": "HOOKS"},
        )
    else:
        LOGGER.info("Hook completed cmd=%s", cmd, extra={"category": "HOOKS"})
    return proc.returncode


def command_hook(command: Optional[str], timeout: float = DEFAULT_HOOK_TIMEOUT_SECONDS) -> Optional[CloseHook]:
    """Build a close hook that runs ``command <finished-file>``."""
    argv = shlex.split(command or "")
    if not argv:
        return None

    def _hook(path: Path) -> None:
        run_hook_command([*argv, str(path)], timeout=timeout)

    return _hook
