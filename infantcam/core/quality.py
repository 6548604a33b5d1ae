# infantcam/core/quality.py
from __future__ import annotations
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from infantcam import config
from infantcam.core.frames import FrameHistory, PixelBuffer


class Quality(str, Enum):
    POOR = "poor"
    GOOD = "good"
    EXCELLENT = "excellent"


@dataclass(frozen=True)
class QualityMetrics:
    is_framed: bool
    is_centered: bool
    is_stable: bool
    overall_quality: Quality
    # diagnostics, not part of the verdict
    brightness: Optional[float] = None
    edge_ratio: Optional[float] = None
    motion: Optional[float] = None

    @classmethod
    def initial(cls) -> "QualityMetrics":
        return cls(False, False, False, Quality.POOR)

    def to_dict(self) -> dict:
        out = {
            "isFramed": self.is_framed,
            "isCentered": self.is_centered,
            "isStable": self.is_stable,
            "overallQuality": self.overall_quality.value,
        }
        if self.brightness is not None:
            out["brightness"] = round(self.brightness, 2)
        if self.edge_ratio is not None:
            out["edgeRatio"] = round(self.edge_ratio, 4)
        if self.motion is not None:
            out["motion"] = round(self.motion, 2)
        return out


@dataclass(frozen=True)
class Region:
    left: int
    top: int
    right: int
    bottom: int

    @property
    def area(self) -> int:
        return max(0, self.right - self.left) * max(0, self.bottom - self.top)


def analysis_region(width: int, height: int) -> Region:
    """Central box: 70% of the width, 60% of the height, slightly above centre."""
    return Region(
        left=math.floor(width * config.REGION_LEFT),
        top=math.floor(height * config.REGION_TOP),
        right=math.floor(width * config.REGION_RIGHT),
        bottom=math.floor(height * config.REGION_BOTTOM),
    )


def fuse_quality(is_framed: bool, is_centered: bool, is_stable: bool) -> Quality:
    passed = int(is_framed) + int(is_centered) + int(is_stable)
    if passed == 3:
        return Quality.EXCELLENT
    if passed == 0:
        return Quality.POOR
    return Quality.GOOD


def region_scores(buf: PixelBuffer) -> tuple[float, float]:
    """Return (mean luminance, edge ratio) over the analysis region.

    Luminance is the unweighted RGB mean. A pixel counts as an edge when its
    luminance differs by more than EDGE_LUMA_DELTA from its right or lower
    neighbour; the region's last column and row are never counted.
    Zero-area regions score (0.0, 0.0).
    """
    r = analysis_region(buf.width, buf.height)
    if r.area == 0:
        return 0.0, 0.0
    rgb = buf.data[r.top:r.bottom, r.left:r.right, :3]
    sums = rgb.sum(axis=2, dtype=np.int64)
    count = sums.size
    brightness = float(sums.sum()) / 3.0 / count

    lum = sums / 3.0
    inner = lum[:-1, :-1]
    right = np.abs(inner - lum[:-1, 1:]) > config.EDGE_LUMA_DELTA
    below = np.abs(inner - lum[1:, :-1]) > config.EDGE_LUMA_DELTA
    edges = int(np.count_nonzero(right | below))
    return brightness, edges / count


def motion_delta(current: PixelBuffer, previous: PixelBuffer,
                 stride: int = config.MOTION_SAMPLE_STRIDE) -> Optional[float]:
    """Mean absolute delta over every `stride`-th byte of the interleaved buffers.

    The divisor is size/stride, not the sample count; this keeps the
    threshold calibrated to the reference behaviour.
    """
    a = current.flat
    b = previous.flat
    size = min(a.size, b.size)
    if size == 0:
        return None
    diff = np.abs(a[:size:stride].astype(np.int32) - b[:size:stride].astype(np.int32))
    return float(diff.sum()) / (size / stride)


def check_motion_stability(frames: Sequence[PixelBuffer] | FrameHistory) -> tuple[bool, Optional[float]]:
    """Compare the two most recent entries. Fewer than two is never stable."""
    recent = frames.latest(2) if isinstance(frames, FrameHistory) else list(frames)[-2:]
    if len(recent) < 2:
        return False, None
    previous, current = recent
    delta = motion_delta(current, previous)
    if delta is None:
        return False, None
    return delta < config.MOTION_THRESHOLD, delta


def analyze_frame(buf: PixelBuffer, history: FrameHistory | Sequence[PixelBuffer]) -> QualityMetrics:
    """Score one frame. `history` is read-only and holds prior ticks only."""
    brightness, edge_ratio = region_scores(buf)
    if analysis_region(buf.width, buf.height).area == 0:
        is_framed = is_centered = False
    else:
        is_framed = config.MIN_BRIGHTNESS < brightness < config.MAX_BRIGHTNESS
        is_centered = edge_ratio > config.MIN_EDGE_RATIO
    is_stable, motion = check_motion_stability(history)
    return QualityMetrics(
        is_framed=is_framed,
        is_centered=is_centered,
        is_stable=is_stable,
        overall_quality=fuse_quality(is_framed, is_centered, is_stable),
        brightness=brightness,
        edge_ratio=edge_ratio,
        motion=motion,
    )
