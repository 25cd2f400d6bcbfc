from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "FLAGMON_"


def parse_env_line(line: str) -> tuple[str, str] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("export "):
        text = text[len("export ") :].strip()
    key, sep, value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_env_file(path: Path, prefix: str = ENV_PREFIX, override: bool = False) -> Dict[str, str]:
    """Export ``prefix``-ed keys from a dotenv-style file into ``os.environ``.

    Keys that are already set are left alone unless ``override`` is true.
    Returns the keys that were applied.
    """
    if not path.is_file():
        LOGGER.debug("No env file path=%s", path, extra={"category": "CONFIG"})
        return {}
    applied: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        parsed = parse_env_line(raw_line)
        if parsed is None:
            continue
        key, value = parsed
        if prefix and not key.startswith(prefix):
            continue
        if override or key not in os.environ:
            os.environ[key] = value
            applied[key] = value
    LOGGER.info("Loaded env file path=%s keys=%s", path, sorted(applied), extra={"category": "CONFIG"})
    return applied
