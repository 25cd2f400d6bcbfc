from __future__ import annotations

import logging
import math
import queue
import signal
import threading
import time
from typing import Optional, Protocol

from scapy.packet import Packet

from flagmon.config_loader import MonitorConfig
from flagmon.dump.pcap_writer import Clock
from flagmon.dump.rotating import RotatingCaptureWriter
from flagmon.errors import CaptureFileError, CaptureSourceError, FlowKeyError
from flagmon.hooks import command_hook
from flagmon.packets import CaptureInfo, is_tcp, raw_bytes
from flagmon.scanner import FlushScanner
from flagmon.session.pool import EvictCallback, SessionPool
from flagmon.session.session import SessionSnapshot
from flagmon.sniffer import PacketCallback, PcapReplaySource, SnifferSource

LOGGER = logging.getLogger(__name__)

POLL_SECONDS = 0.5
QUEUE_MAXSIZE = 10_000
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")
_WAKE = object()


class PacketSource(Protocol):
    linktype: int

    @property
    def exhausted(self) -> bool: ...

    def open(self) -> None: ...

    def start(self, callback: PacketCallback) -> None: ...

    def stop(self) -> None: ...


def discard_session(snapshot: SessionSnapshot) -> None:
    LOGGER.debug(
        "Session discarded key=%s packets=%s",
        snapshot.key,
        len(snapshot.packets),
        extra={"category": "SESSION"},
    )


class FlagMonitor:
    """Single consumer loop for packets, flush ticks and shutdown.

    Every packet is archived through the rotating writer before it is tracked
    in the session pool. A failed archive write ends the loop; the pool is
    still flushed on the way out.

    Sources deliver packets from their own threads into a bounded queue, so a
    fast source blocks instead of growing memory without limit.
    """

    def __init__(
        self,
        source: PacketSource,
        writer: RotatingCaptureWriter,
        pool: SessionPool,
        on_evict: EvictCallback,
        flush_interval: float,
        clock: Clock = time.time,
        queue_size: int = QUEUE_MAXSIZE,
    ) -> None:
        self.source = source
        self.writer = writer
        self.pool = pool
        self.on_evict = on_evict
        self.flush_interval = float(flush_interval)
        self._clock = clock
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._shut_down = False
        self.packets_seen = 0
        self.packets_tracked = 0
        self.sessions_flushed = 0

    def _enqueue(self, packet: Packet) -> None:
        try:
            self._queue.put_nowait(packet)
            return
        except queue.Full:
            pass
        while not self._stop_event.is_set():
            try:
                self._queue.put(packet, timeout=POLL_SECONDS)
                return
            except queue.Full:
                continue
        LOGGER.debug("Packet dropped after stop", extra={"category": "CAPTURE"})

    def stop(self) -> None:
        self._stop_event.set()
        try:
            self._queue.put_nowait(_WAKE)
        except queue.Full:
            # The loop has work queued and will see the event.
            pass

    def _on_signal(self, signum: int, _frame: object) -> None:
        # Runs between bytecodes of the loop thread; only flip the event here.
        # The source itself is stopped by shutdown() once the loop returns.
        LOGGER.info("Got signal %s, exiting", signal.Signals(signum).name, extra={"category": "CAPTURE"})
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        for name in SHUTDOWN_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, self._on_signal)

    def handle_packet(self, packet: Packet, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        self.packets_seen += 1
        self.writer.write(CaptureInfo.from_packet(packet), raw_bytes(packet))
        if not is_tcp(packet):
            LOGGER.debug("Archived non-TCP packet without tracking", extra={"category": "CAPTURE"})
            return
        try:
            self.pool.insert(packet, now)
        except FlowKeyError as exc:
            LOGGER.debug("Packet not tracked reason=%s", exc, extra={"category": "SESSION"})
            return
        self.packets_tracked += 1

    def tick(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        started = time.perf_counter()
        evicted = self.pool.flush(now - self.flush_interval, self.on_evict)
        self.sessions_flushed += evicted
        self.writer.flush()
        LOGGER.debug(
            "Flush tick evicted=%s live=%s elapsed_ms=%s",
            evicted,
            len(self.pool),
            int((time.perf_counter() - started) * 1000),
            extra={"category": "PERF"},
        )
        return evicted

    def run(self) -> None:
        LOGGER.info("Monitor loop start flush_interval_s=%s", self.flush_interval, extra={"category": "CAPTURE"})
        failed = True
        try:
            self.source.start(self._enqueue)
            self._loop()
            failed = False
        finally:
            self.shutdown(drain=not failed)

    def _loop(self) -> None:
        next_tick = self._clock() + self.flush_interval
        while not self._stop_event.is_set():
            wait = min(POLL_SECONDS, max(0.0, next_tick - self._clock()))
            try:
                item = self._queue.get(timeout=wait)
            except queue.Empty:
                item = None
            if item is not None and item is not _WAKE:
                self.handle_packet(item)  # type: ignore[arg-type]
            now = self._clock()
            if now >= next_tick:
                self.tick(now)
                next_tick = now + self.flush_interval
            if item is None and self.source.exhausted and self._queue.empty():
                LOGGER.info("Packet source exhausted", extra={"category": "CAPTURE"})
                break

    def _drain(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not _WAKE:
                self.handle_packet(item)  # type: ignore[arg-type]

    def shutdown(self, drain: bool = True) -> None:
        """Stop the source, flush every remaining session and close the archive.

        A source that stopped with an error is reported after the flush, as
        CaptureSourceError, unless another error is already on its way out.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self._stop_event.set()
        source_error: Optional[CaptureSourceError] = None
        try:
            self.source.stop()
        except CaptureSourceError as exc:
            LOGGER.error("Packet source failed error=%s", exc, extra={"category": "ERRORS"})
            source_error = exc
        try:
            if drain:
                self._drain()
            # Every live session counts as stale at exit.
            self.sessions_flushed += self.pool.flush(math.inf, self.on_evict)
        finally:
            try:
                self.writer.close()
            except CaptureFileError:
                if drain:
                    raise
                LOGGER.exception("Archive close failed during abort", extra={"category": "ERRORS"})
        LOGGER.info(
            "Monitor stopped packets_seen=%s packets_tracked=%s sessions_flushed=%s",
            self.packets_seen,
            self.packets_tracked,
            self.sessions_flushed,
            extra={"category": "CAPTURE"},
        )
        if source_error is not None and drain:
            raise source_error


def build_source(config: MonitorConfig) -> PacketSource:
    if config.replay is not None:
        return PcapReplaySource(config.replay, port=config.port)
    assert config.interface is not None and config.port is not None
    return SnifferSource(config.interface, config.port, promisc=config.promisc)


def build_monitor(
    config: MonitorConfig,
    clock: Clock = time.time,
    source: Optional[PacketSource] = None,
) -> FlagMonitor:
    """Open the packet source and wire writers, scanner and pool around it.

    Capture files take the source's link type unless the config overrides it.
    """
    source = source if source is not None else build_source(config)
    source.open()
    linktype = config.linktype if config.linktype is not None else source.linktype
    try:
        writer = RotatingCaptureWriter(
            config.pcap_template,
            config.rotate_interval,
            snaplen=config.snaplen,
            linktype=linktype,
            clock=clock,
        )
    except CaptureFileError:
        source.stop()
        raise
    writer.set_close_hook(command_hook(config.post_rotate_command))

    on_evict: EvictCallback = discard_session
    pattern = config.compiled_pattern()
    if pattern is not None:
        assert config.flag_pcap_template is not None
        on_evict = FlushScanner(
            pattern,
            config.flag_pcap_template,
            snaplen=config.snaplen,
            linktype=linktype,
            close_hook=command_hook(config.flag_post_command),
            clock=clock,
        )
    LOGGER.info("Monitor wired linktype=%s pattern=%s", linktype, config.pattern or "-", extra={"category": "CONFIG"})
    return FlagMonitor(source, writer, SessionPool(), on_evict, config.flush_interval, clock=clock)
