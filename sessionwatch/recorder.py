from __future__ import annotations

import logging
import mimetypes
from datetime import datetime
from typing import Callable, Optional

from .exceptions import StoreUnavailable
from .records import RequestMeta, ResponseMeta
from .store import TrafficStore, utcnow

logger = logging.getLogger("sessionwatch.recorder")

# Never persisted, even though the rest of the request headers are.
REDACTED_HEADERS = ("authorization", "cookie", "set-cookie", "proxy-authorization")


def _content_type(request: RequestMeta, response: ResponseMeta) -> Optional[str]:
    if response.content_type:
        return response.content_type.split(";")[0].strip() or None
    guessed, _ = mimetypes.guess_type(request.path)
    return guessed


def _loggable_headers(request: RequestMeta) -> dict:
    return {
        k.lower(): v
        for k, v in (request.headers or {}).items()
        if k.lower() not in REDACTED_HEADERS
    }


class TrafficRecorder:
    def __init__(self, store: TrafficStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def record(self, client_ip: str, request: RequestMeta, response: ResponseMeta) -> Optional[int]:
        """
        Persist one unassigned HttpLogs row for a finished request.

        Returns the new record id, or None if the store failed (the caller
        then skips segmentation and notification for this request).
        """
        try:
            record_id = await self.store.insert_record(
                client_ip=client_ip,
                timestamp=self.clock(),
                method=request.method,
                url=request.url,
                status_code=response.status_code,
                request_size=request.request_size,
                content_type=_content_type(request, response),
                full_url=request.full_url,
                request_line=f"{request.method} {request.url}",
                headers=_loggable_headers(request),
            )
        except StoreUnavailable:
            logger.exception("failed to record %s %s for client=%r", request.method, request.url, client_ip)
            return None

        logger.debug("recorded id=%s client=%r %s %s -> %s", record_id, client_ip, request.method, request.url, response.status_code)
        return record_id
