from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, List, Optional

from .completion import ClassifierNotifier, CompletionDetector
from .config import PipelineSettings
from .exceptions import ConfigurationError
from .identity import extract_client_ip
from .recorder import TrafficRecorder
from .records import RequestMeta, ResponseMeta
from .reputation import Decision, ReputationGate
from .segmentation import SessionSegmenter, run_custom_segmenter
from .store import TrafficStore, utcnow

logger = logging.getLogger("sessionwatch.pipeline")

FORBIDDEN = 403


@dataclass(frozen=True)
class GateResult:
    decision: Decision
    status_code: Optional[int] = None

    @property
    def blocked(self) -> bool:
        return self.decision is Decision.BLOCK


ADMITTED = GateResult(Decision.ADMIT)


class TrafficPipeline:
    """
    Request-side gate plus the post-response chain
    (record -> segment -> completion/notify).

    Stateless between requests: every decision is re-read from the store.
    With invalid settings the pipeline stays inactive and both entry points
    are no-ops.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        store: TrafficStore,
        lock,
        notifier: Optional[ClassifierNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.active = True
        try:
            settings.validate()
        except ConfigurationError as exc:
            logger.error("%s. Please, resolve this issue to continue; traffic passes through untouched.", exc)
            self.active = False

        self.gate = ReputationGate(store, clock=clock)
        self.recorder = TrafficRecorder(store, clock=clock)
        self.segmenter = SessionSegmenter(store, lock, lookback=settings.lookback, clock=clock)
        self.detector = CompletionDetector(store, notifier if settings.classifier_enabled else None)

    def client_ip(self, request: RequestMeta) -> str:
        return extract_client_ip(
            request.headers,
            request.peer_host,
            custom_header=self.settings.custom_ip_header,
            scope=request.scope,
        )

    async def on_request_start(self, request: RequestMeta) -> GateResult:
        if not self.active:
            return ADMITTED

        client_ip = self.client_ip(request)
        await self.gate.record_sighting(client_ip)
        decision = await self.gate.check_and_gate(client_ip, self.settings.block_duration)
        if decision is Decision.BLOCK:
            return GateResult(Decision.BLOCK, FORBIDDEN)
        return ADMITTED

    async def on_response_complete(self, request: RequestMeta, response: ResponseMeta) -> List[str]:
        """
        Detached post-response work. Returns the session ids reported as
        closed (mostly useful to tests). Never raises.
        """
        if not self.active:
            return []

        try:
            return await self._after_response(request, response)
        except Exception:
            logger.exception("post-response pipeline failed for %s %s", request.method, request.url)
            return []

    async def _after_response(self, request: RequestMeta, response: ResponseMeta) -> List[str]:
        settings = self.settings
        client_ip = self.client_ip(request)

        if not settings.group_to_sessions or settings.custom_segmenter is not None:
            record_id = await self.recorder.record(client_ip, request, response)
            if record_id is None or not settings.group_to_sessions:
                return []
            await run_custom_segmenter(settings.custom_segmenter, request, response)
            candidates = [record_id]
        else:
            # Stamped and stored under the client lock, so segmentation sees
            # the client's records in timestamp order.
            _, written = await self.segmenter.record_and_assign(
                client_ip,
                partial(self.recorder.record, client_ip, request, response),
                settings.session_gap,
                settings.max_requests_per_session,
            )
            # Each opener is reported by the call that wrote it, and only that call.
            candidates = [a.record_id for a in written if a.closes_previous]

        if not settings.classifier_enabled:
            return []

        closed: List[str] = []
        for rid in candidates:
            session_id = await self.detector.on_recorded(rid)
            if session_id is not None:
                closed.append(session_id)
        return closed
