from __future__ import annotations

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    Index,
    text,
)

from .db import Base


class ClientIp(Base):
    """Every distinct client identity seen, plus its blacklist state."""

    __tablename__ = "ClientIps"

    id = Column("Id", Integer, primary_key=True, autoincrement=True)
    client_ip = Column("ClientIp", String(90), nullable=False, unique=True)
    blacklisted = Column("Blacklisted", Boolean, nullable=False, server_default=text("0"), default=False)
    # Start of the current penalty window; meaningless while Blacklisted is false.
    blacklisted_at = Column("BlacklistedAt", DateTime(timezone=False), nullable=True)
    first_seen_utc = Column("FirstSeenUtc", DateTime(timezone=False), nullable=False)


class HttpLog(Base):
    __tablename__ = "HttpLogs"
    __table_args__ = (
        Index("IX_HttpLogs_ClientIp_Timestamp", "ClientIp", "Timestamp"),
        Index("IX_HttpLogs_SessionId", "SessionId"),
    )

    id = Column("Id", Integer, primary_key=True, autoincrement=True)
    client_ip = Column("ClientIp", String(90), nullable=False)
    timestamp = Column("Timestamp", DateTime(timezone=False), nullable=False)

    method = Column("Method", String(10), nullable=False)
    url = Column("Url", String(256), nullable=False)
    full_url = Column("FullUrl", String(2048), nullable=True)
    request_line = Column("RequestLine", String(256), nullable=True)
    status_code = Column("StatusCode", Integer, nullable=False)
    request_size = Column("RequestSize", Integer, nullable=False, server_default=text("0"), default=0)
    content_type = Column("ContentType", String(128), nullable=True)
    headers = Column("Headers", Text, nullable=True)

    # NULL until the segmentation engine assigns it; written exactly once.
    session_id = Column("SessionId", String(64), nullable=True)


class ClientLease(Base):
    """Per-client segmentation lease, used when no Redis is configured."""

    __tablename__ = "ClientLeases"

    client_ip = Column("ClientIp", String(90), primary_key=True)
    token = Column("Token", String(64), nullable=False)
    expires_at = Column("ExpiresAt", DateTime(timezone=False), nullable=False)
