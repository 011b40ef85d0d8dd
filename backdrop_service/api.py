"""
FastAPI layer exposing the backdrop pipeline.

Endpoints:
 - GET /health
 - POST /upload
 - GET /processed/<name> (when SERVE_RESULTS is enabled)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from . import config, errors
from .artifacts import ArtifactStore
from .inputs import DEFAULT_BACKDROP_COLOR, ImageRequest, InputResolver
from .pipeline import BackdropPipeline, PipelineResult
from .remover import BackgroundRemovalService

logger = logging.getLogger(__name__)


class UploadResponse(BaseModel):
    base64: str
    url: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str


async def _sweep_forever(store: ArtifactStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(store.sweep_expired)
        except OSError as exc:
            logger.warning("sweep: failed: %s", exc)


async def _run_until_disconnect(
    pipeline: BackdropPipeline, image_request: ImageRequest, request: Request, poll_seconds: float
) -> Optional[PipelineResult]:
    """
    Run the pipeline, cancelling it if the client goes away.

    Returns None when the client disconnected before completion.
    """
    task = asyncio.create_task(pipeline.run(image_request, base_url=str(request.base_url)))
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_seconds)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("request=%s: client disconnected, cancelling", image_request.request_id)
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
                return None
    except asyncio.CancelledError:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise


def create_app(
    settings: Optional[config.Settings] = None,
    remover: Optional[BackgroundRemovalService] = None,
    resolver: Optional[InputResolver] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    store = ArtifactStore(settings)
    pipeline = BackdropPipeline(settings, store=store, resolver=resolver, remover=remover)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.ensure_dirs()
        await run_in_threadpool(store.sweep_expired)
        sweeper = asyncio.create_task(_sweep_forever(store, settings.sweep_interval_seconds))
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="Backdrop Replacement Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(errors.BackdropError)
    async def backdrop_error_handler(request: Request, exc: errors.BackdropError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.info("Rejected malformed request on %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=400, content={"error": errors.ValidationError.default_message}
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.post(
        "/upload",
        response_model=UploadResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def upload(
        request: Request,
        photo: Optional[UploadFile] = File(None),
        photo_url: Optional[str] = Form(None),
        color: Optional[str] = Form(DEFAULT_BACKDROP_COLOR),
    ):
        has_photo = photo is not None and bool(photo.filename)
        has_url = bool(photo_url and photo_url.strip())
        if has_photo and has_url:
            raise errors.ValidationError("Provide either photo or photo_url, not both")
        if not has_photo and not has_url:
            raise errors.NoImageProvided()

        if has_photo:
            # One byte past the ceiling is enough to reject oversized files.
            data = await photo.read(settings.max_upload_bytes + 1)
            image_request = ImageRequest.from_upload(
                data, photo.content_type, filename=photo.filename, backdrop_color=color
            )
        else:
            image_request = ImageRequest.from_url(photo_url.strip(), backdrop_color=color)

        result = await _run_until_disconnect(
            pipeline, image_request, request, settings.disconnect_poll_seconds
        )
        if result is None:
            # Client is gone; nobody will read this.
            return JSONResponse(status_code=499, content={"error": "Client closed request"})
        if not result.success:
            return JSONResponse(status_code=result.status_code, content={"error": result.error})
        return UploadResponse(base64=result.data_uri, url=result.url)

    if settings.serve_results:
        app.mount(
            "/processed",
            StaticFiles(directory=str(settings.processed_dir), check_dir=False),
            name="processed",
        )

    return app


settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

app = create_app(settings)
