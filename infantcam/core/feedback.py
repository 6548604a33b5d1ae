# infantcam/core/feedback.py
"""User-facing text and colour tokens derived from QualityMetrics."""
from __future__ import annotations
from typing import NamedTuple

from infantcam.core.frames import ViewType
from infantcam.core.quality import Quality, QualityMetrics

MSG_INITIAL = "Position infant in the frame"
MSG_CAPTURED = "Captured!"
MSG_EXCELLENT = "Perfect! Capturing image..."
MSG_NOT_FRAMED = "Move closer or adjust positioning"
MSG_NOT_CENTERED = "Center the infant in the frame"
MSG_NOT_STABLE = "Hold still..."
MSG_ALMOST = "Almost there, keep steady"

GREEN = "#10B981"
AMBER = "#F59E0B"
RED = "#EF4444"

QUALITY_COLORS = {
    Quality.EXCELLENT: GREEN,
    Quality.GOOD: AMBER,
    Quality.POOR: RED,
}


class BannerStyle(NamedTuple):
    background: str
    foreground: str


BANNER_STYLES = {
    GREEN: BannerStyle("#DEF7EC", "#047857"),
    AMBER: BannerStyle("#FEF3C7", "#92400E"),
    RED: BannerStyle("#FEE2E2", "#991B1B"),
}


def feedback_message(m: QualityMetrics) -> str:
    # first match wins
    if m.overall_quality is Quality.EXCELLENT:
        return MSG_EXCELLENT
    if not m.is_framed:
        return MSG_NOT_FRAMED
    if not m.is_centered:
        return MSG_NOT_CENTERED
    if not m.is_stable:
        return MSG_NOT_STABLE
    # unreachable while fuse_quality holds
    return MSG_ALMOST


def quality_color(m: QualityMetrics) -> str:
    return QUALITY_COLORS[m.overall_quality]


def banner_style(m: QualityMetrics) -> BannerStyle:
    return BANNER_STYLES[quality_color(m)]


class CameraInstructions(NamedTuple):
    title: str
    instruction: str
    guidelines: str


_INSTRUCTIONS = {
    ViewType.FRONT: CameraInstructions(
        "Front View Capture",
        "Position infant facing camera",
        "Center the infant's face within the guide frame",
    ),
    ViewType.LEFT: CameraInstructions(
        "Left Profile Capture",
        "Position infant's left side towards camera",
        "Align the profile within the guide frame",
    ),
    ViewType.RIGHT: CameraInstructions(
        "Right Profile Capture",
        "Position infant's right side towards camera",
        "Align the profile within the guide frame",
    ),
}


def camera_instructions(view: ViewType | str) -> CameraInstructions:
    return _INSTRUCTIONS[ViewType(view)]
