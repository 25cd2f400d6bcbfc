from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from flagmon.duration_parser import parse_duration_seconds
from flagmon.errors import ConfigError

LOGGER = logging.getLogger(__name__)

DEFAULT_ROTATE_INTERVAL_SECONDS = 3600.0
DEFAULT_FLUSH_INTERVAL_SECONDS = 300.0
DEFAULT_SNAPLEN = 1600


class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interface: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    replay: Optional[Path] = None
    pcap_template: str
    rotate_interval: float = DEFAULT_ROTATE_INTERVAL_SECONDS
    post_rotate_command: Optional[str] = None
    pattern: Optional[str] = None
    flag_pcap_template: Optional[str] = None
    flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS
    flag_post_command: Optional[str] = None
    snaplen: int = Field(default=DEFAULT_SNAPLEN, ge=64, le=262144)
    linktype: Optional[int] = Field(default=None, ge=0)
    promisc: bool = False

    @field_validator("rotate_interval", "flush_interval", mode="before")
    @classmethod
    def parse_duration(cls, value: object) -> float:
        if isinstance(value, (str, int, float)):
            return parse_duration_seconds(value)
        raise ValueError(f"Invalid duration: {value!r}")

    @field_validator("pcap_template", "flag_pcap_template", "pattern", "post_rotate_command", "flag_post_command", "interface", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            re.compile(value.encode("utf-8"))
        except re.error as exc:
            raise ValueError(f"Invalid pattern {value!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def validate_sources(self) -> "MonitorConfig":
        if self.replay is None and (self.interface is None or self.port is None):
            raise ValueError("interface and port are required unless replaying a pcap file")
        if self.pattern is not None and self.flag_pcap_template is None:
            raise ValueError("flag_pcap_template is required when a pattern is set")
        return self

    def compiled_pattern(self) -> Optional["re.Pattern[bytes]"]:
        if self.pattern is None:
            return None
        return re.compile(self.pattern.encode("utf-8"))


def _validate(data: dict[str, Any]) -> MonitorConfig:
    try:
        return MonitorConfig.model_validate(data)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def read_config_file(config_path: Path) -> dict[str, Any]:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigError("Configuration root must be a YAML object")
    return parsed


def load_config(config_path: Path) -> MonitorConfig:
    cfg = _validate(read_config_file(config_path))
    LOGGER.info(
        "Config loaded interface=%s port=%s pattern=%s",
        cfg.interface or "-",
        cfg.port or "-",
        cfg.pattern or "-",
        extra={"category": "CONFIG"},
    )
    return cfg


def build_config(config_path: Optional[Path] = None, **overrides: Any) -> MonitorConfig:
    """Merge an optional YAML file with command-line values; non-None overrides win."""
    data: dict[str, Any] = read_config_file(config_path) if config_path is not None else {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return _validate(data)
