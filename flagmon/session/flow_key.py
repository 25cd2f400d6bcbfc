from __future__ import annotations

import hashlib
import socket
from typing import NamedTuple

from scapy.layers.inet import IP
from scapy.packet import Packet

from flagmon.errors import FlowKeyError
from flagmon.packets import network_layer, tcp_segment


class FlowKey(NamedTuple):
    network: int
    transport: int

    def __str__(self) -> str:
        return f"{self.network}:{self.transport}"


def _symmetric_hash(a: bytes, b: bytes) -> int:
    # Endpoints are ordered first so both directions of a flow hash alike.
    low, high = sorted((a, b))
    digest = hashlib.blake2b(digest_size=8)
    digest.update(len(low).to_bytes(1, "big"))
    digest.update(low)
    digest.update(high)
    return int.from_bytes(digest.digest(), "big")


def _address_bytes(net: Packet, addr: str) -> bytes:
    family = socket.AF_INET if isinstance(net, IP) else socket.AF_INET6
    return socket.inet_pton(family, addr)


def flow_key(packet: Packet) -> FlowKey:
    """Derive the connection identity of a TCP packet.

    Raises FlowKeyError when the packet has no IP/IPv6 header or no TCP segment.
    """
    net = network_layer(packet)
    if net is None:
        raise FlowKeyError("packet has no network layer")
    tcp = tcp_segment(packet)
    if tcp is None:
        raise FlowKeyError("packet is not TCP")
    try:
        src = _address_bytes(net, net.src)
        dst = _address_bytes(net, net.dst)
    except (OSError, TypeError, ValueError) as exc:
        raise FlowKeyError(f"malformed network addresses src={net.src!r} dst={net.dst!r}") from exc
    sport = int(tcp.sport).to_bytes(2, "big")
    dport = int(tcp.dport).to_bytes(2, "big")
    return FlowKey(_symmetric_hash(src, dst), _symmetric_hash(sport, dport))
