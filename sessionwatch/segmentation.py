"""
Session segmentation.

A session is a run of one client's requests, in timestamp order, where no
two neighbours are more than `max_gap` seconds apart and the run holds at
most `max_count` records. A session's id is the id of its first record.

Assignment is read-decide-write over the store, so it runs under a
per-client lock; each write is additionally conditional on the record
still being unassigned, which keeps assigned records immutable even if a
lock TTL lapses mid-batch.

`record_and_assign` also stamps and inserts the new record while holding
that lock, so a client's records reach the store in timestamp order.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .exceptions import LockUnavailable, StoreUnavailable
from .records import Assigned, RequestMeta, ResponseMeta, TrafficRecord
from .store import TrafficStore, utcnow

logger = logging.getLogger("sessionwatch.segmentation")

DEFAULT_LOOKBACK_SECONDS = 10 * 60


@dataclass(frozen=True)
class SessionAssignment:
    record_id: int
    session_id: str
    # Stored out of order, after a newer record of the client was segmented.
    late: bool = False

    @property
    def opened(self) -> bool:
        return self.session_id == str(self.record_id)

    @property
    def closes_previous(self) -> bool:
        # A late opener sorts before a record that already reported the closure.
        return self.opened and not self.late


class SessionSegmenter:
    def __init__(
        self,
        store: TrafficStore,
        lock,
        *,
        lookback: float = DEFAULT_LOOKBACK_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.lock = lock
        self.lookback = lookback
        self.clock = clock

    async def assign_session(
        self,
        client_ip: str,
        new_record_id: Optional[int],
        max_gap: float,
        max_count: int,
    ) -> List[SessionAssignment]:
        """
        Resolve every unassigned record of `client_ip` in the lookback window.

        Returns the assignments this call wrote (possibly including records
        from other requests that were still pending). On lock timeout or store
        failure the pending records stay unassigned for the next call.
        """
        written: List[SessionAssignment] = []
        try:
            async with self.lock.hold(client_ip):
                await self._segment(client_ip, max_gap, max_count, written)
        except LockUnavailable:
            logger.warning("skipping segmentation for client=%r record=%s: lock unavailable", client_ip, new_record_id, exc_info=True)
        except StoreUnavailable:
            logger.exception("segmentation aborted for client=%r record=%s", client_ip, new_record_id)
        return written

    async def record_and_assign(
        self,
        client_ip: str,
        insert: Callable[[], Awaitable[Optional[int]]],
        max_gap: float,
        max_count: int,
    ) -> Tuple[Optional[int], List[SessionAssignment]]:
        """
        Run `insert` (which timestamps and stores one record, returning its id)
        and segment the client's pending records, all under the client lock.

        If the lock cannot be had the record is still stored, unassigned, and
        left for a later call.
        """
        written: List[SessionAssignment] = []
        record_id: Optional[int] = None
        attempted = False
        try:
            async with self.lock.hold(client_ip):
                attempted = True
                record_id = await insert()
                if record_id is not None:
                    await self._segment(client_ip, max_gap, max_count, written)
        except LockUnavailable:
            logger.warning("recording client=%r without segmentation: lock unavailable", client_ip, exc_info=True)
        except StoreUnavailable:
            logger.exception("segmentation aborted for client=%r record=%s", client_ip, record_id)

        if not attempted:
            record_id = await insert()
        return record_id, written

    async def _segment(
        self,
        client_ip: str,
        max_gap: float,
        max_count: int,
        written: List[SessionAssignment],
    ) -> None:
        since = self.clock() - timedelta(seconds=self.lookback)
        records = await self.store.recent_records(client_ip, since)

        # For each position, the nearest later record that is already assigned.
        following: List[Optional[TrafficRecord]] = [None] * len(records)
        upcoming: Optional[TrafficRecord] = None
        for i in range(len(records) - 1, -1, -1):
            following[i] = upcoming
            if isinstance(records[i].session, Assigned):
                upcoming = records[i]

        prev: Optional[TrafficRecord] = None
        prev_session: Optional[str] = None

        for i, rec in enumerate(records):
            if isinstance(rec.session, Assigned):
                prev, prev_session = rec, rec.session.session_id
                continue

            later = following[i]
            if later is not None:
                # Stored after a newer record was already segmented.
                candidate = await self._decide_late(rec, later, prev, prev_session, max_gap, max_count)
            else:
                candidate = await self._decide(rec, prev, prev_session, max_gap, max_count)

            if await self.store.assign_session(rec.id, candidate):
                written.append(SessionAssignment(rec.id, candidate, late=later is not None))
                resolved = candidate
                logger.debug(
                    "record=%s client=%r %s session=%s",
                    rec.id, client_ip, "opened" if candidate == rec.record_key else "joined", candidate,
                )
            else:
                # Someone else resolved it first; follow what is stored.
                current = await self.store.get_record(rec.id)
                resolved = (current.session_id if current is not None else None) or candidate

            prev, prev_session = rec, resolved

    async def _decide(
        self,
        rec: TrafficRecord,
        prev: Optional[TrafficRecord],
        prev_session: Optional[str],
        max_gap: float,
        max_count: int,
    ) -> str:
        if prev is None or prev_session is None:
            return rec.record_key

        gap = (rec.timestamp - prev.timestamp).total_seconds()
        if gap > max_gap:
            return rec.record_key

        if await self.store.count_session(prev_session) >= max_count:
            return rec.record_key

        return prev_session

    async def _decide_late(
        self,
        rec: TrafficRecord,
        later: TrafficRecord,
        prev: Optional[TrafficRecord],
        prev_session: Optional[str],
        max_gap: float,
        max_count: int,
    ) -> str:
        """A late record joins the session already running past it when it fits there."""
        later_session = later.session_id
        gap = (later.timestamp - rec.timestamp).total_seconds()
        if gap <= max_gap and await self.store.count_session(later_session) < max_count:
            return later_session
        return await self._decide(rec, prev, prev_session, max_gap, max_count)


async def run_custom_segmenter(fn: Callable[..., Any], request: RequestMeta, response: ResponseMeta) -> None:
    """Caller-supplied grouping; awaited if it is a coroutine function. Its consistency is the caller's."""
    try:
        result = fn(request, response)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("custom segmenter raised for %s %s", request.method, request.url)
