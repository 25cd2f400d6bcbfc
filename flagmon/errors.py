from __future__ import annotations


class FlagmonError(Exception):
    """Base class for errors raised by flagmon."""


class FlowKeyError(FlagmonError, ValueError):
    """The packet cannot be tracked as part of a TCP session."""


class CaptureFileError(FlagmonError, OSError):
    """A capture file could not be created, written, flushed or closed."""


class ConfigError(FlagmonError, ValueError):
    """Invalid monitor configuration."""


class CaptureSourceError(FlagmonError, RuntimeError):
    """A packet source could not be opened or stopped with an error."""
