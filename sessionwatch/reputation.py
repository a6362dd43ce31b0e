from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Optional

from .exceptions import StoreUnavailable
from .records import BlacklistEntry
from .store import TrafficStore, utcnow

logger = logging.getLogger("sessionwatch.gate")


class Decision(str, enum.Enum):
    ADMIT = "admit"
    BLOCK = "block"


class ReputationGate:
    """
    Admit/block decisions from the persisted blacklist.

    Blacklisting is time-boxed: once `block_duration` seconds have passed since
    `blacklisted_at`, the next request from that client clears the flag (lazy
    expiry, no sweeper). Store failures admit the request.
    """

    def __init__(self, store: TrafficStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def record_sighting(self, client_ip: str) -> None:
        try:
            created = await self.store.ensure_client(client_ip, self.clock())
        except StoreUnavailable:
            logger.exception("record_sighting failed for client=%r", client_ip)
            return
        if created:
            logger.debug("new client sighted: %r", client_ip)

    async def check_and_gate(self, client_ip: str, block_duration: float) -> Decision:
        try:
            return await self._check_and_gate(client_ip, block_duration)
        except StoreUnavailable:
            logger.exception("blacklist check failed for client=%r; admitting", client_ip)
            return Decision.ADMIT

    async def _check_and_gate(self, client_ip: str, block_duration: float) -> Decision:
        entry = await self.store.get_client(client_ip)
        if entry is None or not entry.blacklisted:
            return Decision.ADMIT

        if entry.blacklisted_at is not None:
            elapsed = (self.clock() - entry.blacklisted_at).total_seconds()
            if elapsed < block_duration:
                logger.info("blocking client=%r (%.1fs into %.1fs penalty)", client_ip, elapsed, block_duration)
                return Decision.BLOCK

        # Window over (or never stamped): lift the flag.
        cleared = await self.store.clear_blacklist(client_ip, entry.blacklisted_at)
        if cleared:
            logger.info("blacklist expired for client=%r", client_ip)
        return Decision.ADMIT

    async def blacklist(self, client_ip: str) -> BlacklistEntry:
        """External trust decision: start a fresh penalty window."""
        entry = await self.store.set_blacklisted(client_ip, True, self.clock())
        logger.info("client=%r blacklisted at %s", client_ip, entry.blacklisted_at)
        return entry

    async def unblacklist(self, client_ip: str) -> BlacklistEntry:
        entry = await self.store.set_blacklisted(client_ip, False, self.clock())
        logger.info("client=%r removed from blacklist", client_ip)
        return entry

    async def lookup(self, client_ip: str) -> Optional[BlacklistEntry]:
        return await self.store.get_client(client_ip)
