from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from scapy.layers.inet import IP, TCP
from scapy.layers.inet6 import IPv6
from scapy.packet import Packet, Raw

TCP_FIN = 0x01
TCP_RST = 0x04


@dataclass(frozen=True)
class CaptureInfo:
    ts_sec: int
    ts_usec: int
    caplen: int
    orig_len: int

    @classmethod
    def from_packet(cls, packet: Packet) -> "CaptureInfo":
        data = raw_bytes(packet)
        ts = float(getattr(packet, "time", 0.0) or 0.0)
        ts_sec = int(ts)
        ts_usec = min(999_999, max(0, int(round((ts - ts_sec) * 1_000_000))))
        wirelen = getattr(packet, "wirelen", None)
        orig_len = int(wirelen) if wirelen else len(data)
        return cls(ts_sec=ts_sec, ts_usec=ts_usec, caplen=len(data), orig_len=max(orig_len, len(data)))


def raw_bytes(packet: Packet) -> bytes:
    """Return the bytes as captured, falling back to a rebuild for crafted packets."""
    original = getattr(packet, "original", None)
    if original:
        return bytes(original)
    return bytes(packet)


def network_layer(packet: Packet) -> Optional[Packet]:
    if IP in packet:
        return packet[IP]
    if IPv6 in packet:
        return packet[IPv6]
    return None


def tcp_segment(packet: Packet) -> Optional[Packet]:
    if TCP in packet:
        return packet[TCP]
    return None


def is_tcp(packet: Packet) -> bool:
    return TCP in packet


def closes_connection(segment: Packet) -> bool:
    flags = int(segment.flags)
    return bool(flags & (TCP_FIN | TCP_RST))


def tcp_payload(packet: Packet) -> bytes:
    segment = tcp_segment(packet)
    if segment is None or Raw not in segment:
        return b""
    return bytes(segment[Raw].load)
