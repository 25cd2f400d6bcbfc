from __future__ import annotations

import logging
from typing import Callable, Dict, List, Tuple

from scapy.packet import Packet

from flagmon.errors import FlowKeyError
from flagmon.packets import closes_connection, tcp_segment
from flagmon.session.flow_key import FlowKey, flow_key
from flagmon.session.rwlock import RWLock
from flagmon.session.session import Session, SessionSnapshot

LOGGER = logging.getLogger(__name__)

EvictCallback = Callable[[SessionSnapshot], object]


class SessionPool:
    """Groups TCP packets into sessions keyed by flow identity.

    Structural changes to the session map happen under the exclusive side of
    the lock; flush inspects under the shared side and runs its callback with
    no pool lock held.
    """

    def __init__(self) -> None:
        self._lock = RWLock()
        self._sessions: Dict[FlowKey, Session] = {}

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        with self._lock.read_locked():
            return key in self._sessions

    def keys(self) -> List[FlowKey]:
        with self._lock.read_locked():
            return list(self._sessions)

    def get(self, key: FlowKey) -> SessionSnapshot | None:
        with self._lock.read_locked():
            sess = self._sessions.get(key)
            return sess.snapshot() if sess is not None else None

    def insert(self, packet: Packet, now: float) -> FlowKey:
        """Add a TCP packet to its session, creating the session if needed.

        Raises FlowKeyError for packets that cannot be tracked; the map is left
        untouched in that case.
        """
        segment = tcp_segment(packet)
        if segment is None:
            raise FlowKeyError("packet is not TCP")
        key = flow_key(packet)
        closing = closes_connection(segment)

        with self._lock.write_locked():
            sess = self._sessions.get(key)
            if sess is None:
                sess = Session(key=key, last_active=now, packets=[packet])
                self._sessions[key] = sess
                LOGGER.debug("Session opened key=%s", key, extra={"category": "SESSION"})
            else:
                sess.packets.append(packet)
                sess.last_active = now
            if closing and not sess.closed:
                sess.closed = True
                LOGGER.debug(
                    "Session closed by peer key=%s packets=%s",
                    key,
                    len(sess.packets),
                    extra={"category": "SESSION"},
                )
        return key

    def flush(self, cutoff: float, on_evict: EvictCallback) -> int:
        """Evict closed sessions and sessions idle since before ``cutoff``.

        ``on_evict`` is called once per evicted session with a snapshot, then the
        session is removed. Returns the number of evicted sessions.
        """
        with self._lock.read_locked():
            candidates: List[Tuple[Session, SessionSnapshot]] = [
                (sess, sess.snapshot())
                for sess in self._sessions.values()
                if sess.closed or sess.last_active < cutoff
            ]

        done: List[Tuple[Session, SessionSnapshot]] = []
        try:
            for sess, snap in candidates:
                done.append((sess, snap))
                on_evict(snap)
        finally:
            self._remove(done)

        if done:
            LOGGER.info(
                "Session flush evicted=%s remaining=%s",
                len(done),
                len(self),
                extra={"category": "SESSION"},
            )
        return len(done)

    def _remove(self, evicted: List[Tuple[Session, SessionSnapshot]]) -> None:
        if not evicted:
            return
        with self._lock.write_locked():
            for sess, snap in evicted:
                if self._sessions.get(sess.key) is not sess:
                    continue
                late = sess.packets[len(snap.packets):]
                if not late:
                    del self._sessions[sess.key]
                    continue
                # Packets inserted after the snapshot start a fresh session.
                fresh = Session(key=sess.key, last_active=sess.last_active, packets=list(late))
                fresh.closed = any(
                    closes_connection(seg) for seg in (tcp_segment(p) for p in late) if seg is not None
                )
                self._sessions[sess.key] = fresh
                LOGGER.debug(
                    "Session reopened after eviction key=%s late_packets=%s",
                    sess.key,
                    len(late),
                    extra={"category": "SESSION"},
                )
