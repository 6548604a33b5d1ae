# infantcam/core/overlay.py
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Optional

import cv2
import numpy as np

from infantcam import config
from infantcam.core.feedback import GREEN, RED, quality_color
from infantcam.core.quality import Quality, QualityMetrics

VIEWBOX = 100.0
DASH = (2.0, 1.0)


@dataclass(frozen=True)
class GuideFrame:
    x: float
    y: float
    width: float
    height: float
    color: str
    dashed: bool
    radius: float = 2.0
    stroke_width: float = 1.0


@dataclass(frozen=True)
class Line:
    x1: float
    y1: float
    x2: float
    y2: float
    color: str
    stroke_width: float = 0.5
    opacity: float = 0.6


@dataclass(frozen=True)
class Indicator:
    name: str
    cx: float
    cy: float
    ok: bool
    radius: float = 2.0

    @property
    def color(self) -> str:
        return GREEN if self.ok else RED


@dataclass(frozen=True)
class Overlay:
    """Guide geometry in a 100x100 viewbox stretched over the video."""
    guide: GuideFrame
    crosshair: Optional[tuple[Line, Line]]
    indicators: tuple[Indicator, Indicator, Indicator]

    def to_dict(self) -> dict:
        return {
            "viewBox": [0, 0, VIEWBOX, VIEWBOX],
            "guide": asdict(self.guide),
            "crosshair": [asdict(l) for l in self.crosshair] if self.crosshair else None,
            "indicators": [dict(asdict(i), color=i.color) for i in self.indicators],
        }


def build_overlay(m: QualityMetrics) -> Overlay:
    color = quality_color(m)
    excellent = m.overall_quality is Quality.EXCELLENT
    # same proportions as the analysis region
    guide = GuideFrame(
        x=config.REGION_LEFT * VIEWBOX,
        y=config.REGION_TOP * VIEWBOX,
        width=(config.REGION_RIGHT - config.REGION_LEFT) * VIEWBOX,
        height=(config.REGION_BOTTOM - config.REGION_TOP) * VIEWBOX,
        color=color,
        dashed=not excellent,
    )
    crosshair = None
    if not excellent:
        crosshair = (
            Line(50, 25, 50, 75, color),
            Line(20, 50, 80, 50, color),
        )
    indicators = (
        Indicator("framed", 85, 15, m.is_framed),
        Indicator("centered", 85, 25, m.is_centered),
        Indicator("stable", 85, 35, m.is_stable),
    )
    return Overlay(guide, crosshair, indicators)


def hex_to_bgr(color: str) -> tuple[int, int, int]:
    c = color.lstrip("#")
    r, g, b = int(c[0:2], 16), int(c[2:4], 16), int(c[4:6], 16)
    return b, g, r


def _dashed_line(img, p1, p2, color, thickness, dash_px, gap_px):
    p1 = np.asarray(p1, dtype=np.float64)
    p2 = np.asarray(p2, dtype=np.float64)
    length = float(np.linalg.norm(p2 - p1))
    if length == 0:
        return
    step = (p2 - p1) / length
    pos = 0.0
    while pos < length:
        end = min(pos + dash_px, length)
        a = p1 + step * pos
        b = p1 + step * end
        cv2.line(img, (int(round(a[0])), int(round(a[1]))),
                 (int(round(b[0])), int(round(b[1]))), color, thickness, cv2.LINE_AA)
        pos = end + gap_px


def draw_overlay(frame_bgr: np.ndarray, overlay: Overlay) -> np.ndarray:
    """Draw the overlay onto a copy of a BGR frame (preview / debug snapshots)."""
    out = frame_bgr.copy()
    h, w = out.shape[:2]
    sx, sy = w / VIEWBOX, h / VIEWBOX
    unit = max(1, int(round(min(sx, sy))))

    g = overlay.guide
    color = hex_to_bgr(g.color)
    x1, y1 = g.x * sx, g.y * sy
    x2, y2 = (g.x + g.width) * sx, (g.y + g.height) * sy
    thickness = max(1, int(round(g.stroke_width * unit)))
    if g.dashed:
        dash, gap = DASH[0] * unit, DASH[1] * unit
        for p, q in (((x1, y1), (x2, y1)), ((x2, y1), (x2, y2)),
                     ((x2, y2), (x1, y2)), ((x1, y2), (x1, y1))):
            _dashed_line(out, p, q, color, thickness, dash, gap)
    else:
        cv2.rectangle(out, (int(x1), int(y1)), (int(x2), int(y2)), color, thickness, cv2.LINE_AA)

    if overlay.crosshair:
        layer = out.copy()
        for ln in overlay.crosshair:
            cv2.line(layer, (int(ln.x1 * sx), int(ln.y1 * sy)), (int(ln.x2 * sx), int(ln.y2 * sy)),
                     hex_to_bgr(ln.color), max(1, int(round(ln.stroke_width * unit))), cv2.LINE_AA)
        opacity = overlay.crosshair[0].opacity
        out = cv2.addWeighted(layer, opacity, out, 1 - opacity, 0)

    for ind in overlay.indicators:
        cv2.circle(out, (int(ind.cx * sx), int(ind.cy * sy)), max(1, int(round(ind.radius * unit))),
                   hex_to_bgr(ind.color), -1, cv2.LINE_AA)
    return out
