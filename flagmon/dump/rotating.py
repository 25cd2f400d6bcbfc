from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from flagmon.dump.pcap_writer import DEFAULT_SNAPLEN, DLT_EN10MB, CaptureFileWriter, Clock, CloseHook
from flagmon.packets import CaptureInfo

LOGGER = logging.getLogger(__name__)


class RotatingCaptureWriter:
    """Capture writer that starts a new file once ``interval`` seconds have elapsed.

    Rotation is checked on write only, so an idle writer keeps its file open.
    The close hook is kept here and handed to every file the writer opens.
    """

    def __init__(
        self,
        template: str,
        interval: float,
        snaplen: int = DEFAULT_SNAPLEN,
        linktype: int = DLT_EN10MB,
        clock: Clock = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"rotation interval must be positive: {interval!r}")
        self.template = template
        self.interval = float(interval)
        self.snaplen = snaplen
        self.linktype = linktype
        self._clock = clock
        self._close_hook: Optional[CloseHook] = None
        self._rotations = 0
        self._writer = CaptureFileWriter(template, snaplen=snaplen, linktype=linktype, clock=clock)

    @property
    def path(self) -> Path:
        return self._writer.path

    @property
    def created_at(self) -> float:
        return self._writer.created_at

    @property
    def rotations(self) -> int:
        return self._rotations

    @property
    def closed(self) -> bool:
        return self._writer.closed

    def set_close_hook(self, hook: Optional[CloseHook]) -> None:
        self._close_hook = hook
        self._writer.set_close_hook(hook)

    def write(self, info: CaptureInfo, data: bytes) -> None:
        now = self._clock()
        if now - self._writer.created_at > self.interval:
            self._rotate(now)
        self._writer.write(info, data)

    def _rotate(self, now: float) -> None:
        previous = self._writer
        previous.close()
        self._writer = CaptureFileWriter(self.template, snaplen=self.snaplen, linktype=self.linktype, clock=self._clock)
        self._writer.set_close_hook(self._close_hook)
        self._rotations += 1
        LOGGER.info(
            "Capture file rotated previous_file=%s next_file=%s age_s=%.1f interval_s=%s",
            previous.path.name,
            self._writer.path.name,
            now - previous.created_at,
            self.interval,
            extra={"category": "FILES"},
        )

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self._writer.close()

    def __enter__(self) -> "RotatingCaptureWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
