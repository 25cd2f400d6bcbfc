from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Optional

from flagmon.dump.pcap_writer import DEFAULT_SNAPLEN, DLT_EN10MB, CaptureFileWriter, Clock, CloseHook
from flagmon.errors import CaptureFileError
from flagmon.logging_setup import correlation_context
from flagmon.packets import CaptureInfo, raw_bytes
from flagmon.session.session import SessionSnapshot

LOGGER = logging.getLogger(__name__)


class FlushScanner:
    """Flush callback that dumps sessions whose payload matches ``pattern``.

    Each matching session gets its own pcap file, written in arrival order and
    closed immediately. Dump failures are logged so the capture keeps running.
    """

    def __init__(
        self,
        pattern: "re.Pattern[bytes]",
        template: str,
        snaplen: int = DEFAULT_SNAPLEN,
        linktype: int = DLT_EN10MB,
        close_hook: Optional[CloseHook] = None,
        clock: Clock = time.time,
    ) -> None:
        self.pattern = pattern
        self.template = template
        self.snaplen = snaplen
        self.linktype = linktype
        self.close_hook = close_hook
        self._clock = clock
        self.scanned = 0
        self.matches = 0

    def __call__(self, snapshot: SessionSnapshot) -> None:
        self.scan(snapshot)

    def scan(self, snapshot: SessionSnapshot) -> Optional[Path]:
        self.scanned += 1
        if not self.pattern.search(snapshot.payload()):
            return None
        with correlation_context(str(snapshot.key)):
            LOGGER.info(
                "Pattern matched key=%s packets=%s",
                snapshot.key,
                len(snapshot.packets),
                extra={"category": "MATCH"},
            )
            try:
                path = self._dump(snapshot)
            except CaptureFileError:
                LOGGER.exception("Match dump failed key=%s", snapshot.key, extra={"category": "ERRORS"})
                return None
        self.matches += 1
        return path

    def _dump(self, snapshot: SessionSnapshot) -> Path:
        writer = CaptureFileWriter(self.template, snaplen=self.snaplen, linktype=self.linktype, clock=self._clock)
        writer.set_close_hook(self.close_hook)
        try:
            for packet in snapshot.packets:
                writer.write(CaptureInfo.from_packet(packet), raw_bytes(packet))
        except CaptureFileError:
            # A partial dump is closed without its hook; the write error wins.
            writer.set_close_hook(None)
            try:
                writer.close()
            except CaptureFileError:
                LOGGER.exception("Closing partial dump failed file=%s", writer.path, extra={"category": "ERRORS"})
            raise
        writer.close()
        return writer.path
