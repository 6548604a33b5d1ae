"""
Pytest configuration and fixtures for infantcam tests.
"""
import os
import tempfile

# must be set before infantcam.config is imported
os.environ.setdefault("INFANTCAM_DATA_DIR", tempfile.mkdtemp(prefix="infantcam-test-"))

import cv2
import numpy as np
import pytest

from infantcam.core.errors import FrameReadError, SourceAcquisitionError
from infantcam.core.frames import PixelBuffer


def solid_bgr(w=100, h=100, value=128):
    return np.full((h, w, 3), value, dtype=np.uint8)


def stripes_bgr(w=100, h=100, width=1):
    """Alternating black/white vertical stripes, `width` pixels each."""
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    cols = (np.arange(w) // width) % 2 == 1
    frame[:, cols] = 255
    return frame


def rgba_buffer(w=100, h=100, value=128, alpha=255):
    data = np.full((h, w, 4), value, dtype=np.uint8)
    data[..., 3] = alpha
    return PixelBuffer(width=w, height=h, data=data)


class FakeClock:
    """Integer millisecond clock advanced by hand."""

    def __init__(self, start=0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


class FakeSource:
    """In-memory FrameSource; records open/stop calls."""

    def __init__(self, frames=None, fail_open=False):
        self.frames = list(frames) if frames is not None else [solid_bgr()]
        self.fail_open = fail_open
        self.fail_reads = 0
        self.force_size = None
        self.opened = False
        self.open_calls = 0
        self.stop_calls = 0
        self.reads = 0

    def set_frames(self, *frames):
        self.frames = list(frames)

    def open(self):
        self.open_calls += 1
        if self.fail_open:
            raise SourceAcquisitionError("fake", reason="permission denied")
        self.opened = True

    def dimensions(self):
        if not self.opened:
            return 0, 0
        if self.force_size is not None:
            return self.force_size
        h, w = self.frames[0].shape[:2]
        return w, h

    def read(self):
        if not self.opened:
            raise FrameReadError("source stopped")
        if self.fail_reads:
            self.fail_reads -= 1
            raise FrameReadError("transient")
        frame = self.frames[self.reads % len(self.frames)]
        self.reads += 1
        return frame

    def stop(self):
        self.stop_calls += 1
        self.opened = False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gray_source():
    return FakeSource([solid_bgr()])


@pytest.fixture
def stripes_source():
    return FakeSource([stripes_bgr()])


@pytest.fixture
def captured():
    return []


@pytest.fixture
def jpeg_bytes():
    ok, buf = cv2.imencode(".jpg", solid_bgr(64, 48, 120))
    assert ok
    return buf.tobytes()


@pytest.fixture
def png_stripes():
    ok, buf = cv2.imencode(".png", stripes_bgr(120, 80, width=4))
    assert ok
    return buf.tobytes()
