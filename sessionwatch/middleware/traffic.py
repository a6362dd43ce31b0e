from __future__ import annotations

import logging
from typing import Optional

from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..pipeline import TrafficPipeline
from ..records import RequestMeta, ResponseMeta

logger = logging.getLogger("sessionwatch.middleware")


def _content_length(request: Request) -> int:
    raw = request.headers.get("content-length")
    try:
        return max(int(raw), 0) if raw is not None else 0
    except ValueError:
        return 0


def request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        method=request.method,
        path=request.url.path,
        query=request.url.query or None,
        headers=dict(request.headers),
        peer_host=request.client.host if request.client else None,
        full_url=str(request.url),
        request_size=_content_length(request),
        scope=request.scope,
    )


class TrafficMiddleware(BaseHTTPMiddleware):
    """
    Gate requests from blacklisted clients, then record and segment traffic
    once the response has gone out.

    The pipeline is either passed in or looked up on `app.state.pipeline`
    (set by the app lifespan). With no pipeline the middleware passes
    everything through.
    """

    def __init__(self, app, pipeline: Optional[TrafficPipeline] = None, exclude_paths: tuple = ()) -> None:
        super().__init__(app)
        self.pipeline = pipeline
        self.exclude_paths = tuple(exclude_paths)

    def _pipeline_for(self, request: Request) -> Optional[TrafficPipeline]:
        if self.pipeline is not None:
            return self.pipeline
        return getattr(request.app.state, "pipeline", None)

    def _excluded(self, path: str) -> bool:
        # "/admin" covers "/admin" and "/admin/...", not "/administrator".
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exclude_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        pipeline = self._pipeline_for(request)
        path = request.url.path or "/"
        if pipeline is None or self._excluded(path):
            return await call_next(request)

        meta = request_meta(request)

        try:
            gate = await pipeline.on_request_start(meta)
        except Exception:
            logger.exception("gate failed for %s %s; admitting", meta.method, meta.url)
            gate = None

        if gate is not None and gate.blocked:
            return Response(status_code=gate.status_code or 403)

        response: Response = await call_next(request)

        result = ResponseMeta(
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
        )
        existing = response.background

        async def after_response() -> None:
            try:
                if existing is not None:
                    await existing()
            finally:
                await pipeline.on_response_complete(meta, result)

        # Runs after the body has been sent to the client.
        response.background = BackgroundTask(after_response)
        return response
