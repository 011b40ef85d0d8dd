from contextlib import asynccontextmanager
from io import BytesIO
from pathlib import Path
import struct
import sys
from typing import AsyncIterator, Optional
import zlib

from httpx import ASGITransport, AsyncClient
from PIL import Image
import pytest

from backdrop_service.api import create_app
from backdrop_service.config import Settings
from backdrop_service.remover import SubprocessBackgroundRemover

FAKE_REMOVER = Path(__file__).with_name("fake_remover.py")


def make_image_bytes(size=(200, 200), color=(200, 40, 60), fmt="JPEG") -> bytes:
    buf = BytesIO()
    mode = "RGBA" if fmt == "PNG" and len(color) == 4 else "RGB"
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def fake_remover(mode: str = "ok", timeout: float = 10.0, pidfile: Optional[Path] = None):
    command = [sys.executable, str(FAKE_REMOVER), mode, "{input}", "{output}"]
    if pidfile is not None:
        command.append(str(pidfile))
    return SubprocessBackgroundRemover(command, timeout_seconds=timeout)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        uploads_dir=tmp_path / "uploads",
        processed_dir=tmp_path / "processed",
        removal_timeout_seconds=10,
        disconnect_poll_seconds=0.05,
    )


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes()


def working_files(settings: Settings):
    found = []
    for directory in (Path(settings.uploads_dir), Path(settings.processed_dir)):
        if directory.is_dir():
            found.extend(sorted(p.name for p in directory.iterdir()))
    return found


@pytest.fixture
def client_factory(settings):
    @asynccontextmanager
    async def _factory(**kwargs) -> AsyncIterator[AsyncClient]:
        app = create_app(kwargs.pop("settings", settings), **kwargs)
        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac

    return _factory


def make_png_header(width: int, height: int) -> bytes:
    """A PNG with a valid IHDR for the given size and no pixel data."""

    def chunk(kind: bytes, payload: bytes) -> bytes:
        body = kind + payload
        return struct.pack(">I", len(payload)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IEND", b"")
