"""Session segmentation: gap and count splits, idempotence, per-client serialization."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from conftest import add_record
from sessionwatch.exceptions import LockUnavailable
from sessionwatch.locks import StoreClientLock
from sessionwatch.segmentation import SessionAssignment, SessionSegmenter

CLIENT = "203.0.113.7"


def _segmenter(store, clock, **kw) -> SessionSegmenter:
    lock = StoreClientLock(store, ttl=30, wait=5, poll_interval=0.01)
    return SessionSegmenter(store, lock, clock=clock, **kw)


async def _sessions(store, record_ids):
    out = []
    for rid in record_ids:
        rec = await store.get_record(rid)
        out.append(rec.session_id)
    return out


def _group(ids, sessions):
    groups: dict = {}
    for rid, sid in zip(ids, sessions):
        groups.setdefault(sid, []).append(rid)
    return list(groups.values())


@pytest.mark.asyncio
async def test_gap_splits_sessions(store, clock) -> None:
    offsets = [0, 5, 40, 41, 200]
    ids = [await add_record(store, CLIENT, t) for t in offsets]
    clock.at(200)

    written = await _segmenter(store, clock).assign_session(CLIENT, ids[-1], max_gap=30, max_count=180)

    sessions = await _sessions(store, ids)
    assert _group(ids, sessions) == [[ids[0], ids[1]], [ids[2], ids[3]], [ids[4]]]
    assert sessions[0] == str(ids[0])
    assert sessions[2] == str(ids[2])
    assert sessions[4] == str(ids[4])
    assert [a.record_id for a in written if a.opened] == [ids[0], ids[2], ids[4]]


@pytest.mark.asyncio
async def test_gap_splits_sessions_one_request_at_a_time(store, clock) -> None:
    seg = _segmenter(store, clock)
    ids = []
    for t in [0, 5, 40, 41, 200]:
        ids.append(await add_record(store, CLIENT, t))
        clock.at(t)
        await seg.assign_session(CLIENT, ids[-1], max_gap=30, max_count=180)

    sessions = await _sessions(store, ids)
    assert [len(g) for g in _group(ids, sessions)] == [2, 2, 1]


@pytest.mark.asyncio
async def test_max_count_splits_sessions(store, clock) -> None:
    seg = _segmenter(store, clock)
    ids = []
    for t in range(5):
        ids.append(await add_record(store, CLIENT, t))
        clock.at(t)
        await seg.assign_session(CLIENT, ids[-1], max_gap=1000, max_count=2)

    sessions = await _sessions(store, ids)
    assert [len(g) for g in _group(ids, sessions)] == [2, 2, 1]


@pytest.mark.asyncio
async def test_rerun_does_not_touch_assigned_records(store, clock) -> None:
    seg = _segmenter(store, clock)
    first = [await add_record(store, CLIENT, t) for t in (0, 5)]
    clock.at(5)
    await seg.assign_session(CLIENT, first[-1], max_gap=30, max_count=180)
    before = await _sessions(store, first)

    # Re-run with thresholds that would split everything.
    later = await add_record(store, CLIENT, 6)
    clock.at(6)
    written = await seg.assign_session(CLIENT, later, max_gap=0.1, max_count=1)

    assert await _sessions(store, first) == before
    assert [a.record_id for a in written] == [later]
    assert (await store.get_record(later)).session_id == str(later)


@pytest.mark.asyncio
async def test_conditional_assign_only_first_writer_wins(store) -> None:
    rid = await add_record(store, CLIENT, 0)
    assert await store.assign_session(rid, str(rid)) is True
    assert await store.assign_session(rid, "999") is False
    assert (await store.get_record(rid)).session_id == str(rid)


@pytest.mark.asyncio
async def test_records_outside_lookback_are_ignored(store, clock) -> None:
    old = await add_record(store, CLIENT, 0)
    new = await add_record(store, CLIENT, 700)
    clock.at(700)

    await _segmenter(store, clock, lookback=600).assign_session(CLIENT, new, max_gap=30, max_count=180)

    assert (await store.get_record(old)).session_id is None
    assert (await store.get_record(new)).session_id == str(new)


@pytest.mark.asyncio
async def test_clients_are_segmented_independently(store, clock) -> None:
    a = await add_record(store, "198.51.100.1", 0)
    b = await add_record(store, "198.51.100.2", 1)
    clock.at(1)
    seg = _segmenter(store, clock)
    await seg.assign_session("198.51.100.2", b, max_gap=30, max_count=180)

    assert (await store.get_record(a)).session_id is None
    assert (await store.get_record(b)).session_id == str(b)


@pytest.mark.asyncio
async def test_concurrent_invocations_agree_on_one_session(store, clock) -> None:
    ids = [await add_record(store, CLIENT, t) for t in (0, 1, 2, 3, 4, 5)]
    clock.at(5)
    seg = _segmenter(store, clock)

    results = await asyncio.gather(
        *(seg.assign_session(CLIENT, rid, max_gap=30, max_count=180) for rid in ids)
    )

    sessions = await _sessions(store, ids)
    assert set(sessions) == {str(ids[0])}
    # Every record was written by exactly one invocation.
    written = sorted(a.record_id for batch in results for a in batch)
    assert written == ids
    assert sum(a.opened for batch in results for a in batch) == 1


class _NeverLock:
    @asynccontextmanager
    async def hold(self, client_ip):
        raise LockUnavailable("busy")
        yield  # pragma: no cover


@pytest.mark.asyncio
async def test_lock_timeout_leaves_records_pending(store, clock) -> None:
    rid = await add_record(store, CLIENT, 0)
    seg = SessionSegmenter(store, _NeverLock(), clock=clock)

    assert await seg.assign_session(CLIENT, rid, max_gap=30, max_count=180) == []
    assert (await store.get_record(rid)).session_id is None

    # Picked up by the next call that gets the lock.
    await _segmenter(store, clock).assign_session(CLIENT, None, max_gap=30, max_count=180)
    assert (await store.get_record(rid)).session_id == str(rid)


@pytest.mark.asyncio
async def test_store_failure_is_swallowed(broken_store, clock) -> None:
    seg = _segmenter(broken_store, clock)
    assert await seg.assign_session(CLIENT, 1, max_gap=30, max_count=180) == []


async def _segmented_pair(store, clock, seg):
    """Record @0 and record @101, each segmented as it arrives."""
    first = await add_record(store, CLIENT, 0)
    clock.at(0)
    await seg.assign_session(CLIENT, first, max_gap=30, max_count=180)
    newer = await add_record(store, CLIENT, 101)
    clock.at(101)
    await seg.assign_session(CLIENT, newer, max_gap=30, max_count=180)
    return first, newer


@pytest.mark.asyncio
async def test_late_record_joins_the_session_it_precedes(store, clock) -> None:
    seg = _segmenter(store, clock)
    first, newer = await _segmented_pair(store, clock, seg)

    # Stamped before `newer`, stored after it was segmented.
    late = await add_record(store, CLIENT, 100)
    written = await seg.assign_session(CLIENT, late, max_gap=30, max_count=180)

    assert written == [SessionAssignment(late, str(newer), late=True)]
    assert not written[0].closes_previous
    assert await _sessions(store, [first, newer, late]) == [str(first), str(newer), str(newer)]


@pytest.mark.asyncio
async def test_late_record_far_from_both_neighbours_opens_quietly(store, clock) -> None:
    seg = _segmenter(store, clock)
    first, newer = await _segmented_pair(store, clock, seg)

    late = await add_record(store, CLIENT, 50)
    (assignment,) = await seg.assign_session(CLIENT, late, max_gap=30, max_count=180)

    assert assignment.opened
    assert not assignment.closes_previous
    assert await _sessions(store, [first, newer]) == [str(first), str(newer)]


class _TracingLock:
    def __init__(self) -> None:
        self.events: list = []

    @asynccontextmanager
    async def hold(self, client_ip):
        self.events.append("acquire")
        try:
            yield
        finally:
            self.events.append("release")


@pytest.mark.asyncio
async def test_record_is_stored_while_the_lock_is_held(store, clock) -> None:
    lock = _TracingLock()
    seg = SessionSegmenter(store, lock, clock=clock)

    async def insert():
        lock.events.append("insert")
        return await add_record(store, CLIENT, 0)

    rid, written = await seg.record_and_assign(CLIENT, insert, max_gap=30, max_count=180)

    assert lock.events == ["acquire", "insert", "release"]
    assert written == [SessionAssignment(rid, str(rid))]


@pytest.mark.asyncio
async def test_record_without_lock_is_stored_unassigned(store, clock) -> None:
    seg = SessionSegmenter(store, _NeverLock(), clock=clock)

    rid, written = await seg.record_and_assign(
        CLIENT, lambda: add_record(store, CLIENT, 0), max_gap=30, max_count=180
    )

    assert written == []
    assert (await store.get_record(rid)).session_id is None
