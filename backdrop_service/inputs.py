"""
Input acquisition for the backdrop pipeline.

Turns an uploaded file or a remote URL into the request's RawInput artifact.
All checks run before anything touches disk, so rejected input never leaves
a file in the uploads area.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from io import BytesIO
import logging
import socket
import threading
import time
from typing import Optional
import uuid

from PIL import Image, UnidentifiedImageError
from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
import requests
from starlette.concurrency import run_in_threadpool
from urllib3.exceptions import ReadTimeoutError

from . import errors
from .artifacts import ArtifactNamespace, Stage, WorkingArtifact
from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_BACKDROP_COLOR = "#ffffff"
GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

_URL_ADAPTER = TypeAdapter(HttpUrl)


class SourceKind(str, Enum):
    UPLOAD = "upload"
    REMOTE_URL = "remote_url"


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ImageRequest:
    source_kind: SourceKind
    backdrop_color: str = DEFAULT_BACKDROP_COLOR
    raw_bytes: Optional[bytes] = field(default=None, repr=False)
    content_type: Optional[str] = None
    filename: Optional[str] = None
    source_url: Optional[str] = None
    request_id: str = field(default_factory=new_request_id)

    @classmethod
    def from_upload(
        cls,
        raw_bytes: bytes,
        content_type: Optional[str],
        filename: Optional[str] = None,
        backdrop_color: Optional[str] = None,
    ) -> "ImageRequest":
        return cls(
            source_kind=SourceKind.UPLOAD,
            raw_bytes=raw_bytes,
            content_type=content_type,
            filename=filename,
            backdrop_color=backdrop_color or DEFAULT_BACKDROP_COLOR,
        )

    @classmethod
    def from_url(cls, source_url: str, backdrop_color: Optional[str] = None) -> "ImageRequest":
        return cls(
            source_kind=SourceKind.REMOTE_URL,
            source_url=source_url,
            backdrop_color=backdrop_color or DEFAULT_BACKDROP_COLOR,
        )


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def _is_image_type(content_type: Optional[str]) -> bool:
    return _media_type(content_type).startswith("image/")


def sniff_image_type(data: bytes) -> Optional[str]:
    """Return the MIME type Pillow detects for `data`, or None if it is not an image."""
    try:
        with Image.open(BytesIO(data)) as image:
            fmt = image.format
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        return None
    return Image.MIME.get(fmt) if fmt else None


def validate_url(raw: str) -> str:
    """Reject anything that is not an absolute http(s) URL."""
    try:
        return str(_URL_ADAPTER.validate_python((raw or "").strip()))
    except PydanticValidationError as exc:
        raise errors.InvalidUrl() from exc


def _remaining(deadline: float) -> tuple[float, float]:
    """(connect, read) timeout for the next call, bounded by the overall deadline."""
    left = deadline - time.monotonic()
    if left <= 0:
        raise errors.RemoteFetchTimeout()
    return (left, left)


def _is_read_timeout(exc: requests.RequestException) -> bool:
    # requests re-raises body read timeouts from iter_content as ConnectionError.
    return isinstance(exc, requests.ConnectionError) and bool(exc.args) and isinstance(
        exc.args[0], ReadTimeoutError
    )


def _abort_read(resp: requests.Response, expired: threading.Event) -> None:
    """
    Runs on the watchdog thread once the deadline passes.

    Shutting the socket down wakes a read blocked on a server that drips
    bytes, which the per-read socket timeout alone never does.
    """
    expired.set()
    conn = getattr(getattr(resp, "raw", None), "connection", None)
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class InputResolver:
    """Produces the RawInput artifact for an `ImageRequest`."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self._session = session or requests.Session()

    def check_upload(self, data: bytes, content_type: Optional[str]) -> None:
        if not data:
            raise errors.NoImageProvided()
        if len(data) > self.settings.max_upload_bytes:
            raise errors.PayloadTooLarge()
        media_type = _media_type(content_type)
        if media_type not in GENERIC_CONTENT_TYPES and not media_type.startswith("image/"):
            raise errors.InvalidMediaType()
        # Declared types are not trusted; the bytes must parse as an image header.
        if sniff_image_type(data) is None:
            raise errors.InvalidMediaType()

    def fetch_remote(self, url: str) -> bytes:
        """
        Download an image with a HEAD probe first.

        The whole exchange (HEAD, GET and body) shares one deadline of
        `fetch_timeout_seconds`. Blocking; callers on the event loop should go
        through `resolve`.
        """
        deadline = time.monotonic() + self.settings.fetch_timeout_seconds
        expired = threading.Event()
        try:
            head = self._session.head(url, timeout=_remaining(deadline), allow_redirects=True)
            head_type = head.headers.get("Content-Type")
            if head.ok and head_type and not _is_image_type(head_type):
                logger.info("remote %s rejected by HEAD probe: content-type=%s", url, head_type)
                raise errors.RemoteNotAnImage()

            resp = self._session.get(url, timeout=_remaining(deadline), stream=True)
            watchdog = threading.Timer(
                max(deadline - time.monotonic(), 0.0), _abort_read, args=(resp, expired)
            )
            watchdog.daemon = True
            watchdog.start()
            try:
                resp.raise_for_status()
                if not _is_image_type(resp.headers.get("Content-Type")):
                    raise errors.RemoteNotAnImage()
                data = self._read_capped(resp, deadline)
            finally:
                watchdog.cancel()
                resp.close()
            if expired.is_set():
                raise errors.RemoteFetchTimeout()
            return data
        except requests.Timeout as exc:
            logger.warning("remote fetch timed out: %s", url)
            raise errors.RemoteFetchTimeout() from exc
        except requests.RequestException as exc:
            if expired.is_set() or _is_read_timeout(exc):
                logger.warning("remote fetch timed out: %s", url)
                raise errors.RemoteFetchTimeout() from exc
            logger.warning("remote fetch failed for %s: %s", url, exc)
            raise errors.RemoteFetchFailed() from exc

    def _read_capped(self, resp: requests.Response, deadline: float) -> bytes:
        limit = self.settings.max_upload_bytes
        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise errors.PayloadTooLarge()
        buf = bytearray()
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if time.monotonic() > deadline:
                raise errors.RemoteFetchTimeout()
            buf.extend(chunk)
            if len(buf) > limit:
                raise errors.PayloadTooLarge()
        if not buf:
            raise errors.RemoteFetchFailed()
        return bytes(buf)

    async def resolve(self, request: ImageRequest, namespace: ArtifactNamespace) -> WorkingArtifact:
        if request.source_kind is SourceKind.UPLOAD:
            data = request.raw_bytes or b""
            self.check_upload(data, request.content_type)
        else:
            url = validate_url(request.source_url or "")
            data = await run_in_threadpool(self.fetch_remote, url)

        path = namespace.path_for(Stage.RAW_INPUT)
        path.write_bytes(data)
        artifact = namespace.record(Stage.RAW_INPUT)
        logger.info(
            "request=%s: stored %s input %s (%d bytes) at %s",
            request.request_id,
            request.source_kind.value,
            request.filename or request.source_url,
            artifact.size,
            path,
        )
        return artifact
