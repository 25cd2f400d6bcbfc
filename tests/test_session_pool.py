import math
import threading
from typing import Callable, List, Tuple

import pytest

from flagmon.errors import FlowKeyError
from flagmon.packets import tcp_payload
from flagmon.session.flow_key import flow_key
from flagmon.session.pool import SessionPool
from flagmon.session.session import SessionSnapshot

from packet_helpers import CLIENT, SERVER, tcp_packet, udp_packet

OTHER_CLIENT = ("10.0.0.9", 50000)


def collect() -> Tuple[List[SessionSnapshot], Callable[[SessionSnapshot], None]]:
    seen: List[SessionSnapshot] = []
    return seen, seen.append


def test_insert_creates_one_session_per_key() -> None:
    pool = SessionPool()
    key = pool.insert(tcp_packet(b"a"), 10.0)
    pool.insert(tcp_packet(b"b", src=SERVER, dst=CLIENT), 11.0)
    pool.insert(tcp_packet(b"c"), 12.0)

    assert len(pool) == 1
    snap = pool.get(key)
    assert snap is not None
    assert snap.key == key
    assert [tcp_payload(p) for p in snap.packets] == [b"a", b"b", b"c"]
    assert snap.last_active == 12.0
    assert snap.closed is False


def test_every_packet_lands_in_the_session_of_its_key() -> None:
    pool = SessionPool()
    packets = [
        tcp_packet(b"1"),
        tcp_packet(b"2", src=OTHER_CLIENT),
        tcp_packet(b"3", src=SERVER, dst=CLIENT),
        tcp_packet(b"4", src=OTHER_CLIENT),
    ]
    for i, pkt in enumerate(packets):
        pool.insert(pkt, float(i))

    assert len(pool) == 2
    for pkt in packets:
        snap = pool.get(flow_key(pkt))
        assert snap is not None
        assert sum(1 for p in snap.packets if p is pkt) == 1
        for key in pool.keys():
            if key != snap.key:
                other = pool.get(key)
                assert other is not None
                assert all(p is not pkt for p in other.packets)


@pytest.mark.parametrize("flags", ["FA", "R", "RA", "F"])
def test_fin_or_rst_closes_session_for_good(flags: str) -> None:
    pool = SessionPool()
    key = pool.insert(tcp_packet(b"data"), 1.0)
    pool.insert(tcp_packet(flags=flags), 2.0)
    pool.insert(tcp_packet(b"late", flags="PA"), 3.0)

    snap = pool.get(key)
    assert snap is not None
    assert snap.closed is True
    assert len(snap.packets) == 3


def test_insert_rejects_non_tcp_without_touching_the_pool() -> None:
    pool = SessionPool()
    pool.insert(tcp_packet(b"a"), 1.0)
    with pytest.raises(FlowKeyError):
        pool.insert(udp_packet(), 2.0)
    assert len(pool) == 1


def test_flush_evicts_closed_and_stale_sessions_only() -> None:
    pool = SessionPool()
    closed_key = pool.insert(tcp_packet(flags="F"), 100.0)
    stale_key = pool.insert(tcp_packet(src=OTHER_CLIENT), 10.0)
    fresh_key = pool.insert(tcp_packet(src=("10.0.0.7", 1234)), 100.0)

    seen, cb = collect()
    evicted = pool.flush(50.0, cb)

    assert evicted == 2
    assert {s.key for s in seen} == {closed_key, stale_key}
    assert closed_key not in pool
    assert stale_key not in pool
    assert fresh_key in pool


def test_flush_cutoff_is_strict() -> None:
    pool = SessionPool()
    key = pool.insert(tcp_packet(), 50.0)

    seen, cb = collect()
    assert pool.flush(50.0, cb) == 0
    assert key in pool
    assert pool.flush(50.000001, cb) == 1
    assert key not in pool


def test_flush_invokes_callback_once_with_all_packets() -> None:
    pool = SessionPool()
    for i in range(3):
        pool.insert(tcp_packet(b"no-secret"), float(i))
    key = pool.insert(tcp_packet(flags="FA"), 3.0)

    seen, cb = collect()
    pool.flush(-math.inf, cb)

    assert len(seen) == 1
    assert seen[0].key == key
    assert len(seen[0].packets) == 4
    assert seen[0].payload() == b"no-secret" * 3
    assert len(pool) == 0

    seen.clear()
    assert pool.flush(math.inf, cb) == 0
    assert seen == []


def test_interleaved_sessions_are_never_merged_or_co_evicted() -> None:
    pool = SessionPool()
    a = pool.insert(tcp_packet(b"a1"), 1.0)
    b = pool.insert(tcp_packet(b"b1", src=OTHER_CLIENT), 1.0)
    pool.insert(tcp_packet(b"a2"), 2.0)
    pool.insert(tcp_packet(b"b2", src=OTHER_CLIENT, flags="FA"), 2.0)
    pool.insert(tcp_packet(b"a3"), 3.0)

    seen, cb = collect()
    pool.flush(0.0, cb)

    assert [s.key for s in seen] == [b]
    assert seen[0].payload() == b"b1b2"
    remaining = pool.get(a)
    assert remaining is not None
    assert remaining.payload() == b"a1a2a3"


def test_snapshot_is_not_affected_by_later_inserts() -> None:
    pool = SessionPool()
    key = pool.insert(tcp_packet(b"x"), 1.0)
    snap = pool.get(key)
    pool.insert(tcp_packet(b"y"), 2.0)
    assert snap is not None
    assert len(snap.packets) == 1


def test_insert_during_eviction_starts_a_fresh_session() -> None:
    pool = SessionPool()
    key = pool.insert(tcp_packet(b"old", flags="FA"), 1.0)
    seen: List[SessionSnapshot] = []

    def racing_callback(snap: SessionSnapshot) -> None:
        seen.append(snap)
        # Simulates a capture thread inserting while the callback runs.
        pool.insert(tcp_packet(b"new"), 5.0)

    assert pool.flush(0.0, racing_callback) == 1
    assert seen[0].payload() == b"old"

    fresh = pool.get(key)
    assert fresh is not None
    assert fresh.payload() == b"new"
    assert fresh.closed is False
    assert fresh.last_active == 5.0
    assert len(pool) == 1


def test_failing_callback_still_removes_visited_sessions() -> None:
    pool = SessionPool()
    pool.insert(tcp_packet(b"a", flags="F"), 1.0)

    def boom(_snap: SessionSnapshot) -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        pool.flush(0.0, boom)
    assert len(pool) == 0


def test_concurrent_insert_and_flush_lose_no_packets() -> None:
    pool = SessionPool()
    total_per_thread = 300
    threads_count = 4
    evicted_packets: List[int] = []
    evicted_lock = threading.Lock()
    stop = threading.Event()

    def count(snap: SessionSnapshot) -> None:
        with evicted_lock:
            evicted_packets.append(len(snap.packets))

    def producer(idx: int) -> None:
        src = (f"10.1.0.{idx + 1}", 30000)
        for i in range(total_per_thread):
            flags = "FA" if i % 25 == 24 else "PA"
            pool.insert(tcp_packet(b"p", flags=flags, src=src), float(i))

    def flusher() -> None:
        while not stop.is_set():
            pool.flush(-math.inf, count)

    workers = [threading.Thread(target=producer, args=(i,)) for i in range(threads_count)]
    flush_thread = threading.Thread(target=flusher)
    flush_thread.start()
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    stop.set()
    flush_thread.join()
    pool.flush(math.inf, count)

    assert len(pool) == 0
    assert sum(evicted_packets) == total_per_thread * threads_count
