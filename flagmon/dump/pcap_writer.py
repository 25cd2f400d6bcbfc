from __future__ import annotations

import logging
import struct
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from flagmon.errors import CaptureFileError
from flagmon.packets import CaptureInfo

LOGGER = logging.getLogger(__name__)

PCAP_MAGIC = 0xA1B2C3D4
PCAP_VERSION_MAJOR = 2
PCAP_VERSION_MINOR = 4
DLT_EN10MB = 1
DEFAULT_SNAPLEN = 1600
BUFFER_SIZE = 64 * 1024

CloseHook = Callable[[Path], None]
Clock = Callable[[], float]


def _io_error(op: str, path: Path, exc: OSError) -> CaptureFileError:
    return CaptureFileError(f"{op} failed file={path}: {exc}")


def render_path(template: str, now: float) -> Path:
    """Render a strftime file-name template against ``now``.

    An existing file is never reused: a ``-NNNN`` sequence is added before the
    extension until the path is free.
    """
    base = Path(time.strftime(template, time.localtime(now)))
    if not base.exists():
        return base
    seq = 1
    while True:
        candidate = base.with_name(f"{base.stem}-{seq:04d}{base.suffix}")
        if not candidate.exists():
            return candidate
        seq += 1


class CaptureFileWriter:
    """Writes packets to a single classic pcap file."""

    def __init__(
        self,
        template: str,
        snaplen: int = DEFAULT_SNAPLEN,
        linktype: int = DLT_EN10MB,
        clock: Clock = time.time,
    ) -> None:
        self.template = template
        self.snaplen = int(snaplen)
        self.linktype = int(linktype)
        self._lock = threading.Lock()
        self._close_hook: Optional[CloseHook] = None
        self._closed = False
        self._records = 0
        self.created_at = clock()
        self.path = render_path(template, self.created_at)
        self._fh: BinaryIO = self._open()

    def _open(self) -> BinaryIO:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(self.path, "wb", buffering=BUFFER_SIZE)
        except OSError as exc:
            raise _io_error("create", self.path, exc) from exc
        hdr = struct.pack(
            "<IHHiIII",
            PCAP_MAGIC,
            PCAP_VERSION_MAJOR,
            PCAP_VERSION_MINOR,
            0,
            0,
            self.snaplen,
            self.linktype,
        )
        try:
            fh.write(hdr)
        except OSError as exc:
            fh.close()
            raise _io_error("write header", self.path, exc) from exc
        LOGGER.info(
            "Opened capture file=%s snaplen=%s linktype=%s",
            self.path,
            self.snaplen,
            self.linktype,
            extra={"category": "FILES"},
        )
        return fh

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def records(self) -> int:
        return self._records

    def set_close_hook(self, hook: Optional[CloseHook]) -> None:
        self._close_hook = hook

    @property
    def close_hook(self) -> Optional[CloseHook]:
        return self._close_hook

    def write(self, info: CaptureInfo, data: bytes) -> None:
        incl = data[: self.snaplen]
        orig_len = max(int(info.orig_len), len(data))
        rec = struct.pack("<IIII", int(info.ts_sec), int(info.ts_usec), len(incl), orig_len)
        with self._lock:
            if self._closed:
                raise CaptureFileError(f"write to closed capture file {self.path}")
            try:
                self._fh.write(rec)
                self._fh.write(incl)
            except OSError as exc:
                raise _io_error("write record", self.path, exc) from exc
            self._records += 1

    def flush(self) -> None:
        with self._lock:
            if self._closed:
                return
            try:
                self._fh.flush()
            except OSError as exc:
                raise _io_error("flush", self.path, exc) from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            error: Optional[OSError] = None
            try:
                self._fh.flush()
            except OSError as exc:
                error = exc
            try:
                self._fh.close()
            except OSError as exc:
                error = error or exc
            if error is not None:
                raise _io_error("close", self.path, error) from error
        LOGGER.info("Closed capture file=%s records=%s", self.path, self._records, extra={"category": "FILES"})
        self._run_close_hook()

    def _run_close_hook(self) -> None:
        hook = self._close_hook
        if hook is None:
            return
        try:
            hook(self.path)
        except Exception:
            LOGGER.exception("Close hook failed file=%s", self.path, extra={"category": "ERRORS"})

    def __enter__(self) -> "CaptureFileWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
