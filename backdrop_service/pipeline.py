"""
High-level backdrop replacement pipeline.

`BackdropPipeline.run` is the main entry point used by the HTTP API and the
local runner. Orchestration is strictly sequential per request:
validate -> remove background -> composite -> finalize.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Optional

from starlette.concurrency import run_in_threadpool

from . import errors
from .artifacts import ArtifactNamespace, ArtifactStore, Stage
from .compositing import composite_onto_color, parse_hex_color
from .config import Settings
from .inputs import ImageRequest, InputResolver
from .remover import BackgroundRemovalService, SubprocessBackgroundRemover

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    REMOVING_BACKGROUND = "removing_background"
    COMPOSITING = "compositing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


_ORDER = [
    PipelineState.RECEIVED,
    PipelineState.VALIDATING,
    PipelineState.REMOVING_BACKGROUND,
    PipelineState.COMPOSITING,
    PipelineState.FINALIZING,
    PipelineState.COMPLETED,
]


@dataclass
class PipelineResult:
    request_id: str
    success: bool
    data_uri: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    status_code: int = 200
    width: Optional[int] = None
    height: Optional[int] = None


class _Run:
    """Tracks the state of one request; states only move forward."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.state = PipelineState.RECEIVED

    def advance(self, state: PipelineState) -> None:
        if self.state in (PipelineState.COMPLETED, PipelineState.FAILED):
            raise RuntimeError(f"request {self.request_id} already finished in state {self.state.value}")
        if state is not PipelineState.FAILED and _ORDER.index(state) != _ORDER.index(self.state) + 1:
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        logger.debug("request=%s: %s -> %s", self.request_id, self.state.value, state.value)
        self.state = state


class BackdropPipeline:
    def __init__(
        self,
        settings: Settings,
        store: Optional[ArtifactStore] = None,
        resolver: Optional[InputResolver] = None,
        remover: Optional[BackgroundRemovalService] = None,
    ) -> None:
        self.settings = settings
        self.store = store or ArtifactStore(settings)
        self.resolver = resolver or InputResolver(settings)
        self.remover = remover or SubprocessBackgroundRemover(
            settings.remover_command, settings.removal_timeout_seconds
        )

    async def run(self, request: ImageRequest, base_url: Optional[str] = None) -> PipelineResult:
        run = _Run(request.request_id)
        namespace = self.store.namespace(request.request_id)
        logger.info(
            "request=%s: received %s input, color=%s",
            request.request_id,
            request.source_kind.value,
            request.backdrop_color,
        )
        try:
            result = await self._execute(run, request, namespace, base_url)
        except errors.BackdropError as exc:
            run.advance(PipelineState.FAILED)
            namespace.cleanup()
            log = logger.info if isinstance(exc, errors.ValidationError) else logger.error
            log("request=%s: failed (%s): %s", request.request_id, type(exc).__name__, exc.message)
            return PipelineResult(
                request_id=request.request_id,
                success=False,
                error=exc.message,
                status_code=exc.status_code,
            )
        except asyncio.CancelledError:
            run.advance(PipelineState.FAILED)
            namespace.cleanup()
            logger.info("request=%s: cancelled", request.request_id)
            raise
        except Exception:  # noqa: BLE001
            run.advance(PipelineState.FAILED)
            namespace.cleanup()
            logger.exception("request=%s: unexpected pipeline failure", request.request_id)
            return PipelineResult(
                request_id=request.request_id,
                success=False,
                error=errors.BackdropError.default_message,
                status_code=500,
            )

        run.advance(PipelineState.COMPLETED)
        logger.info(
            "request=%s: completed %dx%d url=%s",
            request.request_id,
            result.width,
            result.height,
            result.url,
        )
        return result

    async def _execute(
        self,
        run: _Run,
        request: ImageRequest,
        namespace: ArtifactNamespace,
        base_url: Optional[str],
    ) -> PipelineResult:
        run.advance(PipelineState.VALIDATING)
        color = parse_hex_color(request.backdrop_color)
        raw = await self.resolver.resolve(request, namespace)

        run.advance(PipelineState.REMOVING_BACKGROUND)
        await self.remover.remove(raw.path, namespace.path_for(Stage.BACKGROUND_REMOVED))
        cutout = namespace.record(Stage.BACKGROUND_REMOVED)
        namespace.discard(Stage.RAW_INPUT)

        run.advance(PipelineState.COMPOSITING)
        width, height = await run_in_threadpool(
            composite_onto_color, cutout.path, color, namespace.path_for(Stage.FINAL_COMPOSITE)
        )
        final = namespace.record(Stage.FINAL_COMPOSITE)
        namespace.discard(Stage.BACKGROUND_REMOVED)

        run.advance(PipelineState.FINALIZING)
        data_uri = await run_in_threadpool(self.store.data_uri, final)
        url = self.store.public_url(final, base_url)
        namespace.cleanup(keep_final=url is not None)

        return PipelineResult(
            request_id=request.request_id,
            success=True,
            data_uri=data_uri,
            url=url,
            width=width,
            height=height,
        )
