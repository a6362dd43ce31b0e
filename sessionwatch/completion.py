from __future__ import annotations

import logging
from typing import Optional

import httpx

from .exceptions import NotificationUnavailable, StoreUnavailable
from .store import TrafficStore

logger = logging.getLogger("sessionwatch.completion")


class ClassifierNotifier:
    """
    Fire-and-forget POST to the behavior classifier.

    One attempt per session, bounded by `timeout`; no retries. The response
    is logged and otherwise ignored.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 5.0) -> None:
        self.client = client
        self.url = url
        self.timeout = timeout

    async def notify(self, session_id: str) -> None:
        try:
            resp = await self.client.post(
                self.url,
                json={"sessionID": session_id},
                timeout=httpx.Timeout(self.timeout),
            )
        except httpx.HTTPError as exc:
            raise NotificationUnavailable(f"classifier call for session {session_id} failed: {exc!r}") from exc

        logger.info("classifier session=%s -> %s %s", session_id, resp.status_code, resp.text.strip()[:200])


class CompletionDetector:
    def __init__(self, store: TrafficStore, notifier: Optional[ClassifierNotifier] = None) -> None:
        self.store = store
        self.notifier = notifier

    async def closed_session_for(self, record_id: int) -> Optional[str]:
        """
        If `record_id` opened a session, return the id of the client's session
        that it closed (None for a client's first session, or a record that
        joined an existing session).
        """
        record = await self.store.get_record(record_id)
        if record is None or not record.opens_session:
            return None

        previous = await self.store.previous_record(record.client_ip, record.timestamp, record.id)
        if previous is None:
            return None
        if previous.session_id is None:
            logger.warning("record=%s precedes session opener %s but is unassigned", previous.id, record.id)
            return None
        return previous.session_id

    async def on_recorded(self, record_id: Optional[int]) -> Optional[str]:
        """
        Notify the classifier about the session `record_id` just closed, if any.
        Returns the notified session id. Never raises.
        """
        if record_id is None:
            return None

        try:
            closed = await self.closed_session_for(record_id)
        except StoreUnavailable:
            logger.exception("completion check failed for record=%s", record_id)
            return None

        if closed is None:
            return None

        logger.info("session=%s closed by record=%s", closed, record_id)
        if self.notifier is None:
            return closed

        try:
            await self.notifier.notify(closed)
        except NotificationUnavailable:
            logger.warning("dropping classifier notification for session=%s", closed, exc_info=True)
        return closed
