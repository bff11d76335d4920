"""Shared fixtures for faceproctor tests."""

import cv2
import numpy as np
import pytest

from faceproctor.testing import FakeClock, FakeFaceEngine, live_frame, reference_image


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return FakeFaceEngine(clock=clock)


@pytest.fixture
def reference_png():
    return encode_png(reference_image())


@pytest.fixture
def frame_png():
    return encode_png(live_frame())
