# infantcam/core/sampler.py
from __future__ import annotations
import logging
import threading
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from infantcam import config
from infantcam.core.errors import FrameReadError, SourceAcquisitionError
from infantcam.core.frames import PixelBuffer

log = logging.getLogger(__name__)


class FrameSource(Protocol):
    """Live video source owned by exactly one capture session."""

    def open(self) -> None: ...
    def dimensions(self) -> Tuple[int, int]: ...
    def read(self) -> np.ndarray: ...
    def stop(self) -> None: ...


class OpenCVFrameSource:
    """Camera opened through cv2.VideoCapture (device index or stream URL)."""

    def __init__(self, device: int | str = config.CAMERA_INDEX,
                 width: int = config.CAMERA_WIDTH,
                 height: int = config.CAMERA_HEIGHT):
        self.device = device
        self.width = width
        self.height = height
        self._cap: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()

    def open(self) -> None:
        with self._lock:
            if self._cap is not None:
                return
            cap = cv2.VideoCapture(self.device)
            if not cap.isOpened():
                cap.release()
                raise SourceAcquisitionError(str(self.device), reason="device could not be opened")
            # ideal resolution; the driver may pick another
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            self._cap = cap
        log.info("camera opened", extra={"device": self.device})

    def dimensions(self) -> Tuple[int, int]:
        with self._lock:
            if self._cap is None:
                return 0, 0
            w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        return w, h

    def read(self) -> np.ndarray:
        with self._lock:
            if self._cap is None:
                raise FrameReadError("source stopped")
            ok, frame = self._cap.read()
        if not ok or frame is None:
            raise FrameReadError("no frame returned")
        return frame

    def stop(self) -> None:
        with self._lock:
            if self._cap is None:
                return
            self._cap.release()
            self._cap = None
        log.info("camera released", extra={"device": self.device})


class FrameSampler:
    """Turns the source's current frame into a PixelBuffer once per tick."""

    def __init__(self, interval_ms: int = config.TICK_INTERVAL_MS):
        self.interval_ms = interval_ms
        self.sampled = 0
        self.skipped = 0

    @property
    def interval_s(self) -> float:
        return self.interval_ms / 1000.0

    def sample(self, source: FrameSource) -> Optional[PixelBuffer]:
        """Snapshot at the source's current resolution; None while it is warming up."""
        w, h = source.dimensions()
        if w <= 0 or h <= 0:
            self.skipped += 1
            return None
        frame = source.read()
        if frame is None or frame.size == 0:
            self.skipped += 1
            return None
        self.sampled += 1
        return PixelBuffer.from_bgr(frame)
