# infantcam/core/frames.py
from __future__ import annotations
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

import cv2
import numpy as np

from infantcam import config


class ViewType(str, Enum):
    FRONT = "front"
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """RGBA snapshot of one video frame. `data` has shape (height, width, 4)."""
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        if self.data.shape != (self.height, self.width, 4):
            raise ValueError(
                f"pixel data shape {self.data.shape} does not match {self.width}x{self.height}x4"
            )
        if self.data.dtype != np.uint8:
            raise ValueError(f"pixel data must be uint8, got {self.data.dtype}")
        self.data.setflags(write=False)

    @classmethod
    def from_bgr(cls, frame_bgr: np.ndarray) -> "PixelBuffer":
        """Build from an OpenCV BGR (or BGRA / gray) frame."""
        if frame_bgr.ndim == 2:
            rgba = cv2.cvtColor(frame_bgr, cv2.COLOR_GRAY2RGBA)
        elif frame_bgr.shape[2] == 4:
            rgba = cv2.cvtColor(frame_bgr, cv2.COLOR_BGRA2RGBA)
        else:
            rgba = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGBA)
        h, w = rgba.shape[:2]
        return cls(width=w, height=h, data=np.ascontiguousarray(rgba))

    @property
    def flat(self) -> np.ndarray:
        """Channel-interleaved view: R,G,B,A,R,G,B,A,..."""
        return self.data.reshape(-1)

    def to_bgr(self) -> np.ndarray:
        return cv2.cvtColor(self.data, cv2.COLOR_RGBA2BGR)


class FrameHistory:
    """Fixed-capacity FIFO of recent buffers; oldest is evicted first."""

    def __init__(self, capacity: int = config.HISTORY_SIZE):
        self._frames: deque[PixelBuffer] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._frames.maxlen

    def append(self, buf: PixelBuffer) -> None:
        self._frames.append(buf)

    def latest(self, n: int) -> list[PixelBuffer]:
        """Up to `n` most recent buffers, oldest first."""
        if n <= 0:
            return []
        return list(self._frames)[-n:]

    def clear(self) -> None:
        self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[PixelBuffer]:
        return iter(self._frames)


@dataclass
class CapturedImage:
    view: ViewType
    jpeg: bytes
    width: int
    height: int
    manual: bool = False
    ts: float = field(default_factory=time.time)

    @property
    def content_type(self) -> str:
        return "image/jpeg"


def encode_jpeg(frame_bgr: np.ndarray, quality: Optional[int] = None) -> bytes:
    q = config.JPEG_QUALITY if quality is None else int(quality)
    ok, buf = cv2.imencode(".jpg", frame_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), q])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def decode_image(raw: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes to BGR; None when the payload is not an image."""
    if not raw:
        return None
    arr = np.frombuffer(raw, np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)
