from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union


class Unassigned:
    """Session state of a record the segmentation engine has not resolved yet."""

    _instance: Optional["Unassigned"] = None

    def __new__(cls) -> "Unassigned":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNASSIGNED"

    def __bool__(self) -> bool:
        return False


UNASSIGNED = Unassigned()


@dataclass(frozen=True)
class Assigned:
    session_id: str


SessionState = Union[Unassigned, Assigned]


def session_state(raw: Optional[str]) -> SessionState:
    """Map the nullable SessionId column onto a SessionState."""
    return UNASSIGNED if raw is None else Assigned(str(raw))


@dataclass(frozen=True)
class TrafficRecord:
    """Detached view of one HttpLogs row."""

    id: int
    client_ip: str
    timestamp: datetime
    method: str
    url: str
    status_code: int
    request_size: int = 0
    content_type: Optional[str] = None
    session: SessionState = UNASSIGNED

    @property
    def record_key(self) -> str:
        return str(self.id)

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if isinstance(self.session, Assigned) else None

    @property
    def opens_session(self) -> bool:
        return isinstance(self.session, Assigned) and self.session.session_id == self.record_key


@dataclass(frozen=True)
class BlacklistEntry:
    client_ip: str
    blacklisted: bool = False
    blacklisted_at: Optional[datetime] = None


@dataclass
class RequestMeta:
    """What the pipeline needs to know about an incoming request."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    peer_host: Optional[str] = None
    full_url: Optional[str] = None
    query: Optional[str] = None
    request_size: int = 0
    scope: Optional[Dict[str, Any]] = None

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


@dataclass
class ResponseMeta:
    status_code: int
    content_type: Optional[str] = None
