from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..exceptions import StoreUnavailable
from ..records import BlacklistEntry, TrafficRecord

router = APIRouter(prefix="/admin", tags=["admin"])


class ClientOut(BaseModel):
    client_ip: str
    blacklisted: bool
    blacklisted_at: Optional[datetime]


class SessionRecordOut(BaseModel):
    id: int
    client_ip: str
    timestamp: datetime
    method: str
    url: str
    status_code: int
    request_size: int
    content_type: Optional[str]
    session_id: Optional[str]


class SessionOut(BaseModel):
    session_id: str
    client_ip: str
    count: int
    records: List[SessionRecordOut]


def _pipeline(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="pipeline_not_ready")
    return pipeline


def _client_out(entry: BlacklistEntry) -> ClientOut:
    return ClientOut(
        client_ip=entry.client_ip,
        blacklisted=entry.blacklisted,
        # A cleared entry keeps its old timestamp in the store; don't surface it.
        blacklisted_at=entry.blacklisted_at if entry.blacklisted else None,
    )


def _record_out(rec: TrafficRecord) -> SessionRecordOut:
    return SessionRecordOut(
        id=rec.id,
        client_ip=rec.client_ip,
        timestamp=rec.timestamp,
        method=rec.method,
        url=rec.url,
        status_code=rec.status_code,
        request_size=rec.request_size,
        content_type=rec.content_type,
        session_id=rec.session_id,
    )


@router.get("/clients/{client_ip}", response_model=ClientOut)
async def get_client(client_ip: str, request: Request):
    try:
        entry: Optional[BlacklistEntry] = await _pipeline(request).gate.lookup(client_ip)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
    if entry is None:
        raise HTTPException(status_code=404, detail="unknown_client")
    return _client_out(entry)


@router.post("/clients/{client_ip}/blacklist", response_model=ClientOut)
async def blacklist_client(client_ip: str, request: Request):
    """Start a fresh penalty window for this client (classifier or operator verdict)."""
    try:
        entry = await _pipeline(request).gate.blacklist(client_ip)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
    return _client_out(entry)


@router.delete("/clients/{client_ip}/blacklist", response_model=ClientOut)
async def unblacklist_client(client_ip: str, request: Request):
    try:
        entry = await _pipeline(request).gate.unblacklist(client_ip)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
    return _client_out(entry)


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(session_id: str, request: Request):
    """Records of one session, oldest first; what the classifier builds features from."""
    store = _pipeline(request).gate.store
    try:
        records = await store.session_records(session_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
    if not records:
        raise HTTPException(status_code=404, detail="unknown_session")
    return SessionOut(
        session_id=session_id,
        client_ip=records[0].client_ip,
        count=len(records),
        records=[_record_out(r) for r in records],
    )
