"""
Traffic record store.

The only place that talks to the database. Every method is a single-row
(or single-query) operation; callers never get multi-row transactions, so
the rest of the pipeline has to be correct with single-key atomicity only.

Blocking SQLAlchemy work runs in Starlette's threadpool so the event loop
that serves requests is never stalled by the store.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import and_, delete, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from .exceptions import StoreUnavailable
from .models import ClientIp, ClientLease, HttpLog
from .records import BlacklistEntry, TrafficRecord, session_state

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_record(row: HttpLog) -> TrafficRecord:
    return TrafficRecord(
        id=row.id,
        client_ip=row.client_ip,
        timestamp=row.timestamp,
        method=row.method,
        url=row.url,
        status_code=row.status_code,
        request_size=row.request_size or 0,
        content_type=row.content_type,
        session=session_state(row.session_id),
    )


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else None


def _safe_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class TrafficStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"{fn.__name__}: {exc}") from exc

    # -------------------------
    # Client IPs / blacklist
    # -------------------------

    async def ensure_client(self, client_ip: str, now: Optional[datetime] = None) -> bool:
        """Create the default entry on first sighting. Returns True if it was created."""
        return await self._run(self._ensure_client, client_ip, now or utcnow())

    def _ensure_client(self, client_ip: str, now: datetime) -> bool:
        db: Session = self._session_factory()
        try:
            exists = db.execute(
                select(ClientIp.id).where(ClientIp.client_ip == client_ip)
            ).scalar_one_or_none()
            if exists is not None:
                return False
            db.add(ClientIp(client_ip=client_ip, blacklisted=False, first_seen_utc=now))
            try:
                db.commit()
            except IntegrityError:
                # Another request inserted it first.
                db.rollback()
                return False
            return True
        finally:
            db.close()

    async def get_client(self, client_ip: str) -> Optional[BlacklistEntry]:
        return await self._run(self._get_client, client_ip)

    def _get_client(self, client_ip: str) -> Optional[BlacklistEntry]:
        db: Session = self._session_factory()
        try:
            row = db.execute(
                select(ClientIp).where(ClientIp.client_ip == client_ip)
            ).scalar_one_or_none()
            if row is None:
                return None
            return BlacklistEntry(
                client_ip=row.client_ip,
                blacklisted=bool(row.blacklisted),
                blacklisted_at=row.blacklisted_at,
            )
        finally:
            db.close()

    async def clear_blacklist(self, client_ip: str, blacklisted_at: Optional[datetime]) -> bool:
        """
        Conditional unblock: only clears the flag if the entry is still in the
        penalty window that was observed, so a fresh re-blacklist survives.
        """
        return await self._run(self._clear_blacklist, client_ip, blacklisted_at)

    def _clear_blacklist(self, client_ip: str, blacklisted_at: Optional[datetime]) -> bool:
        db: Session = self._session_factory()
        try:
            stmt = (
                update(ClientIp)
                .where(ClientIp.client_ip == client_ip)
                .where(ClientIp.blacklisted.is_(True))
            )
            if blacklisted_at is None:
                stmt = stmt.where(ClientIp.blacklisted_at.is_(None))
            else:
                stmt = stmt.where(ClientIp.blacklisted_at == blacklisted_at)
            result = db.execute(stmt.values(blacklisted=False))
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    async def set_blacklisted(self, client_ip: str, blacklisted: bool, now: Optional[datetime] = None) -> BlacklistEntry:
        now = now or utcnow()
        await self.ensure_client(client_ip, now)
        return await self._run(self._set_blacklisted, client_ip, blacklisted, now)

    def _set_blacklisted(self, client_ip: str, blacklisted: bool, now: datetime) -> BlacklistEntry:
        db: Session = self._session_factory()
        try:
            values: Dict[str, Any] = {"blacklisted": blacklisted}
            if blacklisted:
                values["blacklisted_at"] = now
            db.execute(update(ClientIp).where(ClientIp.client_ip == client_ip).values(**values))
            db.commit()
        finally:
            db.close()
        entry = self._get_client(client_ip)
        return entry if entry is not None else BlacklistEntry(client_ip=client_ip)

    # -------------------------
    # HTTP logs
    # -------------------------

    async def insert_record(
        self,
        *,
        client_ip: str,
        timestamp: datetime,
        method: str,
        url: str,
        status_code: int,
        request_size: int = 0,
        content_type: Optional[str] = None,
        full_url: Optional[str] = None,
        request_line: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        row = HttpLog(
            client_ip=client_ip,
            timestamp=timestamp,
            method=(method or "")[:10],
            url=(url or "")[:256],
            full_url=_clip(full_url, 2048),
            request_line=_clip(request_line, 256),
            status_code=int(status_code),
            request_size=int(request_size or 0),
            content_type=_clip(content_type, 128),
            headers=_safe_json(headers),
            session_id=None,
        )
        return await self._run(self._insert_row, row)

    def _insert_row(self, row: HttpLog) -> int:
        db: Session = self._session_factory()
        try:
            db.add(row)
            db.commit()
            return row.id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def get_record(self, record_id: int) -> Optional[TrafficRecord]:
        return await self._run(self._get_record, record_id)

    def _get_record(self, record_id: int) -> Optional[TrafficRecord]:
        db: Session = self._session_factory()
        try:
            row = db.get(HttpLog, int(record_id))
            return _to_record(row) if row is not None else None
        finally:
            db.close()

    async def recent_records(self, client_ip: str, since: datetime) -> List[TrafficRecord]:
        """A client's records from `since` on, oldest first (ties broken by id)."""
        return await self._run(self._recent_records, client_ip, since)

    def _recent_records(self, client_ip: str, since: datetime) -> List[TrafficRecord]:
        db: Session = self._session_factory()
        try:
            rows = db.execute(
                select(HttpLog)
                .where(HttpLog.client_ip == client_ip)
                .where(HttpLog.timestamp >= since)
                .order_by(HttpLog.timestamp.asc(), HttpLog.id.asc())
            ).scalars().all()
            return [_to_record(r) for r in rows]
        finally:
            db.close()

    async def count_session(self, session_id: str) -> int:
        return await self._run(self._count_session, session_id)

    def _count_session(self, session_id: str) -> int:
        db: Session = self._session_factory()
        try:
            return int(
                db.execute(
                    select(func.count()).select_from(HttpLog).where(HttpLog.session_id == session_id)
                ).scalar_one()
            )
        finally:
            db.close()

    async def assign_session(self, record_id: int, session_id: str) -> bool:
        """Write SessionId only if the record is still unassigned. True if this call won."""
        return await self._run(self._assign_session, record_id, session_id)

    def _assign_session(self, record_id: int, session_id: str) -> bool:
        db: Session = self._session_factory()
        try:
            result = db.execute(
                update(HttpLog)
                .where(HttpLog.id == int(record_id))
                .where(HttpLog.session_id.is_(None))
                .values(session_id=session_id)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    async def previous_record(self, client_ip: str, before: datetime, before_id: Optional[int] = None) -> Optional[TrafficRecord]:
        """
        Latest record of the client older than `before`. With `before_id`,
        records sharing that exact timestamp but with a lower id count as older,
        matching the (timestamp, id) order segmentation uses.
        """
        return await self._run(self._previous_record, client_ip, before, before_id)

    def _previous_record(self, client_ip: str, before: datetime, before_id: Optional[int]) -> Optional[TrafficRecord]:
        older = HttpLog.timestamp < before
        if before_id is not None:
            older = or_(older, and_(HttpLog.timestamp == before, HttpLog.id < int(before_id)))
        db: Session = self._session_factory()
        try:
            row = db.execute(
                select(HttpLog)
                .where(HttpLog.client_ip == client_ip)
                .where(older)
                .order_by(HttpLog.timestamp.desc(), HttpLog.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None
        finally:
            db.close()

    async def session_records(self, session_id: str) -> List[TrafficRecord]:
        return await self._run(self._session_records, session_id)

    def _session_records(self, session_id: str) -> List[TrafficRecord]:
        db: Session = self._session_factory()
        try:
            rows = db.execute(
                select(HttpLog)
                .where(HttpLog.session_id == session_id)
                .order_by(HttpLog.timestamp.asc(), HttpLog.id.asc())
            ).scalars().all()
            return [_to_record(r) for r in rows]
        finally:
            db.close()

    # -------------------------
    # Client leases
    # -------------------------

    async def try_acquire_lease(self, client_ip: str, token: str, ttl_seconds: float) -> bool:
        return await self._run(self._try_acquire_lease, client_ip, token, ttl_seconds)

    def _try_acquire_lease(self, client_ip: str, token: str, ttl_seconds: float) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        db: Session = self._session_factory()
        try:
            db.add(ClientLease(client_ip=client_ip, token=token, expires_at=expires_at))
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()

            # Lease row exists: take it over only if it has expired.
            result = db.execute(
                update(ClientLease)
                .where(ClientLease.client_ip == client_ip)
                .where(ClientLease.expires_at < now)
                .values(token=token, expires_at=expires_at)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    async def release_lease(self, client_ip: str, token: str) -> bool:
        return await self._run(self._release_lease, client_ip, token)

    def _release_lease(self, client_ip: str, token: str) -> bool:
        db: Session = self._session_factory()
        try:
            result = db.execute(
                delete(ClientLease)
                .where(ClientLease.client_ip == client_ip)
                .where(ClientLease.token == token)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    # -------------------------
    # Health
    # -------------------------

    async def ping(self) -> bool:
        return await self._run(self._ping)

    def _ping(self) -> bool:
        db: Session = self._session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        finally:
            db.close()
