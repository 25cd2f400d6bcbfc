from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from scapy.packet import Packet

from flagmon.packets import tcp_payload
from flagmon.session.flow_key import FlowKey


@dataclass
class Session:
    key: FlowKey
    last_active: float
    packets: List[Packet] = field(default_factory=list)
    closed: bool = False

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            key=self.key,
            packets=tuple(self.packets),
            last_active=self.last_active,
            closed=self.closed,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session handed to flush callbacks."""

    key: FlowKey
    packets: Tuple[Packet, ...]
    last_active: float
    closed: bool

    def payload(self) -> bytes:
        return b"".join(tcp_payload(p) for p in self.packets)
