import asyncio
import base64
from io import BytesIO
import os
from pathlib import Path

from PIL import Image
import pytest

from backdrop_service import errors
from backdrop_service.artifacts import ArtifactStore
from backdrop_service.inputs import ImageRequest
from backdrop_service.pipeline import BackdropPipeline, PipelineState, _Run
from backdrop_service.remover import BackgroundRemovalService

from conftest import fake_remover, working_files


class CountingRemover(BackgroundRemovalService):
    def __init__(self):
        self.calls = 0

    async def remove(self, input_path: Path, output_path: Path) -> Path:
        self.calls += 1
        with Image.open(input_path) as src:
            src.convert("RGBA").save(output_path, format="PNG")
        return output_path


def _decode(data_uri: str) -> Image.Image:
    assert data_uri.startswith("data:image/png;base64,")
    return Image.open(BytesIO(base64.b64decode(data_uri.split(",", 1)[1])))


def _pipeline(settings, remover):
    store = ArtifactStore(settings)
    store.ensure_dirs()
    return BackdropPipeline(settings, store=store, remover=remover)


async def test_upload_is_composited_onto_requested_color(settings, jpeg_bytes):
    pipeline = _pipeline(settings, fake_remover("ok"))
    request = ImageRequest.from_upload(jpeg_bytes, "image/jpeg", backdrop_color="#00b894")

    result = await pipeline.run(request, base_url="http://test/")

    assert result.success
    assert (result.width, result.height) == (200, 200)
    final = _decode(result.data_uri)
    assert final.format == "PNG"
    assert final.size == (200, 200)
    assert final.getpixel((0, 0))[:3] == (0, 184, 148)
    assert final.getpixel((199, 199))[:3] == (0, 184, 148)
    with Image.open(BytesIO(jpeg_bytes)) as original:
        assert final.getpixel((100, 100))[:3] == original.convert("RGB").getpixel((100, 100))


async def test_success_keeps_only_the_served_final(settings, jpeg_bytes):
    pipeline = _pipeline(settings, fake_remover("ok"))
    request = ImageRequest.from_upload(jpeg_bytes, "image/jpeg")

    result = await pipeline.run(request, base_url="http://test/")

    assert result.url == f"http://test/processed/{request.request_id}_final.png"
    assert working_files(settings) == [f"{request.request_id}_final.png"]


async def test_final_is_removed_when_results_are_not_served(settings, jpeg_bytes):
    settings.serve_results = False
    pipeline = _pipeline(settings, fake_remover("ok"))

    result = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg"))

    assert result.success
    assert result.url is None
    assert working_files(settings) == []


async def test_invalid_color_fails_before_the_tool_runs(settings, jpeg_bytes):
    remover = CountingRemover()
    pipeline = _pipeline(settings, remover)

    result = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg", backdrop_color="#zzzzzz"))

    assert not result.success
    assert result.status_code == 400
    assert remover.calls == 0
    assert working_files(settings) == []


async def test_oversized_upload_never_invokes_the_tool(settings):
    settings.max_upload_bytes = 1024
    remover = CountingRemover()
    pipeline = _pipeline(settings, remover)
    data = b"\x89PNG\r\n\x1a\n" + os.urandom(2048)

    result = await pipeline.run(ImageRequest.from_upload(data, "image/png"))

    assert result.status_code == 400
    assert result.error == errors.PayloadTooLarge.default_message
    assert remover.calls == 0


async def test_tool_failure_maps_to_generic_500_and_cleans_up(settings, jpeg_bytes):
    pipeline = _pipeline(settings, fake_remover("fail"))

    result = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg"))

    assert not result.success
    assert result.status_code == 500
    assert result.error == "Background removal failed"
    assert working_files(settings) == []


async def test_timeout_reaps_tool_and_removes_raw_input(settings, jpeg_bytes, tmp_path):
    pidfile = tmp_path / "tool.pid"
    pipeline = _pipeline(settings, fake_remover("hang", timeout=3, pidfile=pidfile))

    result = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg"))

    assert result.status_code == 500
    assert result.error == errors.BackgroundRemovalTimeout.default_message
    with pytest.raises(ProcessLookupError):
        os.kill(int(pidfile.read_text()), 0)
    assert working_files(settings) == []


async def test_garbage_tool_output_is_a_codec_failure(settings, jpeg_bytes):
    pipeline = _pipeline(settings, fake_remover("garbage"))

    result = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg"))

    assert result.status_code == 500
    assert result.error == "Image composition failed"
    assert working_files(settings) == []


async def test_compositing_same_input_twice_is_byte_identical(settings, jpeg_bytes):
    pipeline = _pipeline(settings, fake_remover("ok"))

    first = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg", backdrop_color="#6c5ce7"))
    second = await pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg", backdrop_color="#6c5ce7"))

    assert first.request_id != second.request_id
    assert first.data_uri == second.data_uri


async def test_concurrent_failure_does_not_touch_other_request(settings, jpeg_bytes):
    failed = asyncio.Event()
    req_fail = ImageRequest.from_upload(jpeg_bytes, "image/jpeg")
    req_ok = ImageRequest.from_upload(jpeg_bytes, "image/jpeg")
    seen_inputs = {}

    class Remover(BackgroundRemovalService):
        async def remove(self, input_path, output_path):
            seen_inputs[input_path.name] = output_path.name
            if req_fail.request_id in input_path.name:
                await asyncio.sleep(0.05)
                failed.set()
                raise errors.BackgroundRemovalFailed()
            await failed.wait()
            # the other request has failed and cleaned up; our input must survive
            assert input_path.is_file()
            with Image.open(input_path) as src:
                src.convert("RGBA").save(output_path, format="PNG")
            return output_path

    pipeline = _pipeline(settings, Remover())
    bad, good = await asyncio.gather(pipeline.run(req_fail), pipeline.run(req_ok, base_url="http://test/"))

    assert not bad.success
    assert good.success
    assert len(set(seen_inputs)) == 2
    assert len(set(seen_inputs.values())) == 2
    assert working_files(settings) == [f"{req_ok.request_id}_final.png"]


async def test_cancellation_cleans_up_and_propagates(settings, jpeg_bytes, tmp_path):
    pidfile = tmp_path / "tool.pid"
    pipeline = _pipeline(settings, fake_remover("hang", timeout=60, pidfile=pidfile))
    task = asyncio.create_task(pipeline.run(ImageRequest.from_upload(jpeg_bytes, "image/jpeg")))

    while not (pidfile.exists() and pidfile.read_text()):
        await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert working_files(settings) == []


def test_states_only_move_forward():
    run = _Run("r1")
    run.advance(PipelineState.VALIDATING)
    with pytest.raises(RuntimeError):
        run.advance(PipelineState.COMPOSITING)
    run.advance(PipelineState.FAILED)
    with pytest.raises(RuntimeError):
        run.advance(PipelineState.VALIDATING)

