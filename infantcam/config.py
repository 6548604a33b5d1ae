# infantcam/config.py
from __future__ import annotations
from pathlib import Path
import os

# ── Paths ─────────────────────────────────────────────────────────────────────
# BASE_DIR = .../infantcam
BASE_DIR: Path = Path(__file__).resolve().parent
# Submissions live in project_root/data unless overridden
DATA_DIR: Path = Path(os.getenv("INFANTCAM_DATA_DIR", str(BASE_DIR.parent / "data")))
SUBMISSIONS_DIR: Path = DATA_DIR / "submissions"
SUBMISSIONS_INDEX_FILE: Path = SUBMISSIONS_DIR / "index.pkl"

# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL: str = os.getenv("INFANTCAM_LOG_LEVEL", "INFO")

# ── Camera (server-attached source) ──────────────────────────────────────────
CAMERA_INDEX: int = int(os.getenv("INFANTCAM_CAMERA_INDEX", "0"))
CAMERA_WIDTH: int = int(os.getenv("INFANTCAM_CAMERA_WIDTH", "1280"))
CAMERA_HEIGHT: int = int(os.getenv("INFANTCAM_CAMERA_HEIGHT", "720"))

# ── Analysis region (fractions of the full frame) ────────────────────────────
REGION_LEFT: float = 0.15
REGION_RIGHT: float = 0.85
REGION_TOP: float = 0.20
REGION_BOTTOM: float = 0.80

# ── Quality heuristics ───────────────────────────────────────────────────────
MIN_BRIGHTNESS: float = 50.0        # exclusive
MAX_BRIGHTNESS: float = 200.0       # exclusive
EDGE_LUMA_DELTA: float = 30.0       # neighbour luminance jump counted as an edge
MIN_EDGE_RATIO: float = 0.05
MOTION_THRESHOLD: float = 15.0      # mean per-sample delta
MOTION_SAMPLE_STRIDE: int = 16      # bytes, over the interleaved RGBA buffer
HISTORY_SIZE: int = 3

# ── Capture timing (milliseconds) ────────────────────────────────────────────
TICK_INTERVAL_MS: int = 400
WARMUP_MS: int = 1000
MANUAL_REVEAL_MS: int = 10000
CAPTURE_SETTLE_MS: int = 200

# ── Encoding ─────────────────────────────────────────────────────────────────
JPEG_QUALITY: int = 80

# ── Submission ───────────────────────────────────────────────────────────────
MAX_IMAGE_BYTES: int = 5 * 1024 * 1024
MIN_AGE_MONTHS: int = 0
MAX_AGE_MONTHS: int = 144
ANALYZE_SESSIONS_MAX: int = 64      # remote /analyze histories kept in memory
