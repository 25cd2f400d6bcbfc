from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from scapy.config import conf
from scapy.error import Scapy_Exception
from scapy.packet import Packet
from scapy.sendrecv import AsyncSniffer
from scapy.utils import PcapReader

from flagmon.dump.pcap_writer import DLT_EN10MB
from flagmon.errors import CaptureSourceError
from flagmon.packets import tcp_segment

LOGGER = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 5.0

PacketCallback = Callable[[Packet], None]
SocketFactory = Callable[..., Any]


def build_bpf_filter(port: int) -> str:
    return f"tcp and port {int(port)}"


def matches_port(packet: Packet, port: int) -> bool:
    """Same selection as ``build_bpf_filter`` for packets that bypass the kernel filter."""
    segment = tcp_segment(packet)
    return segment is not None and port in (int(segment.sport), int(segment.dport))


def linktype_for_layer(layer: Optional[type]) -> int:
    if layer is None:
        return DLT_EN10MB
    return int(conf.l2types.layer2num.get(layer, DLT_EN10MB))


class SnifferSource:
    """Live packet source backed by scapy's AsyncSniffer.

    The capture socket is opened on the caller's thread so a bad interface or
    a missing permission fails ``open()`` instead of killing the sniffer
    thread. The link type comes from the socket's first layer.
    """

    def __init__(
        self,
        interface: str,
        port: int,
        promisc: bool = False,
        socket_factory: Optional[SocketFactory] = None,
    ) -> None:
        self.interface = interface
        self.port = port
        self.promisc = promisc
        self.linktype = DLT_EN10MB
        self._socket_factory = socket_factory
        self._socket: Any = None
        self._sniffer: Optional[AsyncSniffer] = None

    @property
    def exhausted(self) -> bool:
        sniffer = self._sniffer
        if sniffer is None or sniffer.thread is None:
            return False
        return not sniffer.thread.is_alive()

    def open(self) -> None:
        if self._socket is not None:
            return
        bpf = build_bpf_filter(self.port)
        factory = self._socket_factory or conf.L2listen
        try:
            self._socket = factory(iface=self.interface, filter=bpf, promisc=self.promisc)
        except (OSError, ValueError, Scapy_Exception) as exc:
            raise CaptureSourceError(f"cannot open capture iface={self.interface}: {exc}") from exc
        self.linktype = linktype_for_layer(getattr(self._socket, "LL", None))
        LOGGER.info(
            "Opened capture socket iface=%s filter=%s promisc=%s linktype=%s",
            self.interface,
            bpf,
            self.promisc,
            self.linktype,
            extra={"category": "CAPTURE"},
        )

    def start(self, callback: PacketCallback) -> None:
        self.open()
        self._sniffer = AsyncSniffer(opened_socket=self._socket, prn=callback, store=False)
        self._sniffer.start()
        LOGGER.info("Sniffer started iface=%s", self.interface, extra={"category": "CAPTURE"})

    def stop(self) -> None:
        """Stop the sniffer thread and close the socket.

        Raises CaptureSourceError when the sniffer thread ended with an error.
        """
        sniffer, self._sniffer = self._sniffer, None
        sock, self._socket = self._socket, None
        try:
            if sniffer is not None:
                thread = sniffer.thread
                if sniffer.running and thread is not None and thread.is_alive():
                    sniffer.stop(join=False)
                sniffer.join(JOIN_TIMEOUT_SECONDS)
        except Exception as exc:
            raise CaptureSourceError(f"sniffer failed iface={self.interface}: {exc}") from exc
        finally:
            if sock is not None:
                sock.close()
        LOGGER.info("Sniffer stopped iface=%s", self.interface, extra={"category": "CAPTURE"})


class PcapReplaySource:
    """Replays packets from an existing pcap file on a background thread.

    When ``port`` is set, only TCP packets to or from it are replayed, like
    the live BPF filter.
    """

    def __init__(self, path: Path, port: Optional[int] = None) -> None:
        self.path = path
        self.port = port
        self.linktype = DLT_EN10MB
        self.packets_read = 0
        self.packets_skipped = 0
        self._reader: Optional[PcapReader] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()
        self._error: Optional[Exception] = None

    @property
    def exhausted(self) -> bool:
        return self._thread is not None and not self._thread.is_alive()

    def open(self) -> None:
        if self._reader is not None:
            return
        try:
            self._reader = PcapReader(str(self.path))
        except (OSError, Scapy_Exception) as exc:
            raise CaptureSourceError(f"cannot read capture file={self.path}: {exc}") from exc
        self.linktype = int(self._reader.linktype)
        LOGGER.info("Opened replay file=%s linktype=%s", self.path, self.linktype, extra={"category": "CAPTURE"})

    def start(self, callback: PacketCallback) -> None:
        self.open()
        LOGGER.info("Replaying capture file=%s port=%s", self.path, self.port or "-", extra={"category": "CAPTURE"})
        self._thread = threading.Thread(target=self._replay, args=(callback,), name="PcapReplay", daemon=True)
        self._thread.start()

    def _replay(self, callback: PacketCallback) -> None:
        reader = self._reader
        assert reader is not None
        try:
            for packet in reader:
                if self._stopped.is_set():
                    break
                if self.port is not None and not matches_port(packet, self.port):
                    self.packets_skipped += 1
                    continue
                callback(packet)
                self.packets_read += 1
        except Exception as exc:
            self._error = exc
            LOGGER.exception("Replay failed file=%s", self.path, extra={"category": "ERRORS"})
        finally:
            reader.close()
        LOGGER.info(
            "Replay finished file=%s packets=%s skipped=%s",
            self.path,
            self.packets_read,
            self.packets_skipped,
            extra={"category": "CAPTURE"},
        )

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(JOIN_TIMEOUT_SECONDS)
        elif self._reader is not None:
            self._reader.close()
        error, self._error = self._error, None
        if error is not None:
            raise CaptureSourceError(f"replay failed file={self.path}: {error}") from error
