"""Tests for image decoding and reference fetching."""

import asyncio
import base64

import cv2
import httpx
import numpy as np
import pytest

from faceproctor.engine import euclidean_distance
from faceproctor.frames import LatestFrameSource, StaticFrameSource, VideoCaptureSource
from faceproctor.images import ImageDecodeError, ReferenceFetchError, decode_data_url, decode_image, fetch_image
from faceproctor.monitor import score_distance
from faceproctor.testing import reference_image


def test_decode_png(reference_png):
    img = decode_image(reference_png)
    assert img.shape == (1, 4, 3)


def test_decode_rejects_garbage():
    with pytest.raises(ImageDecodeError):
        decode_image(b"not an image")
    with pytest.raises(ImageDecodeError):
        decode_image(b"")


def test_decode_data_url(reference_png):
    url = "data:image/png;base64," + base64.b64encode(reference_png).decode()
    assert decode_data_url(url).shape == (1, 4, 3)
    with pytest.raises(ImageDecodeError):
        decode_data_url("data:image/png;base64,@@@")


def test_fetch_from_path_bytes_and_array(tmp_path, reference_png):
    path = tmp_path / "ref.png"
    path.write_bytes(reference_png)
    arr = reference_image()

    async def scenario():
        assert (await fetch_image(str(path))).shape == (1, 4, 3)
        assert (await fetch_image(reference_png)).shape == (1, 4, 3)
        assert await fetch_image(arr) is arr
        with pytest.raises(ReferenceFetchError):
            await fetch_image("/does/not/exist.png")

    asyncio.run(scenario())


def test_fetch_over_http(reference_png):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/avatars/jane.png":
            return httpx.Response(200, content=reference_png)
        return httpx.Response(404)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            img = await fetch_image("https://cdn.example.com/avatars/jane.png", client=client)
            assert img.shape == (1, 4, 3)
            with pytest.raises(ReferenceFetchError):
                await fetch_image("https://cdn.example.com/avatars/missing.png", client=client)

    asyncio.run(scenario())


def test_fetch_enforces_size_cap(tmp_path, reference_png):
    async def endless():
        for _ in range(100):
            yield b"\0" * 1024

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/declared.png":
            return httpx.Response(200, content=reference_png)
        return httpx.Response(200, content=endless())

    path = tmp_path / "ref.png"
    path.write_bytes(reference_png)
    cap = len(reference_png) - 1

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ReferenceFetchError, match="exceeds"):
                await fetch_image("https://cdn.example.com/declared.png", client=client, max_bytes=cap)
            with pytest.raises(ReferenceFetchError, match="exceeds"):
                await fetch_image("https://cdn.example.com/chunked.png", client=client, max_bytes=4096)
            img = await fetch_image("https://cdn.example.com/declared.png", client=client, max_bytes=len(reference_png))
            assert img.shape == (1, 4, 3)
        with pytest.raises(ReferenceFetchError, match="exceeds"):
            await fetch_image(str(path), max_bytes=cap)

    asyncio.run(scenario())


def test_euclidean_distance():
    a = np.zeros(128, dtype=np.float32)
    b = np.zeros(128, dtype=np.float32)
    b[0], b[1] = 3.0, 4.0
    assert euclidean_distance(a, b) == pytest.approx(5.0)
    with pytest.raises(ValueError):
        euclidean_distance(a, np.zeros(64))


@pytest.mark.parametrize(
    "distance,is_match,confidence",
    [(0.0, True, 1.0), (0.3, True, 0.7), (0.6, False, 0.4), (1.5, False, 0.0)],
)
def test_score_distance(distance, is_match, confidence):
    match, conf = score_distance(distance, 0.6)
    assert match is is_match
    assert conf == pytest.approx(confidence)


def test_frame_sources():
    frame = np.ones((2, 2, 3), dtype=np.uint8)
    assert StaticFrameSource(frame).read() is frame

    latest = LatestFrameSource()
    assert latest.read() is None
    latest.push(frame)
    assert latest.read() is frame
    assert latest.frame_count == 1
    latest.clear()
    assert latest.read() is None


def test_video_capture_source_missing_file(tmp_path):
    src = VideoCaptureSource(str(tmp_path / "missing.avi"))
    src.release(timeout=5)
    assert src.read() is None
    assert src.error == "Failed to open video source"


def test_video_capture_source_reads_file(tmp_path):
    path = str(tmp_path / "clip.avi")
    writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (64, 48))
    for i in range(10):
        writer.write(np.full((48, 64, 3), i * 20, dtype=np.uint8))
    writer.release()

    src = VideoCaptureSource(path, sampling_fps=10.0)
    src._thread.join(5)
    frame = src.read()
    assert frame is not None
    assert frame.shape == (48, 64, 3)
    assert src.frame_count > 0
    assert src.error == "Stream ended"
    src.release()
