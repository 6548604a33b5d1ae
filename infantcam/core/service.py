import logging
from collections import OrderedDict
from typing import Callable, Dict, Optional

from infantcam import config
from infantcam.core.errors import InvalidSessionEventError
from infantcam.core.feedback import banner_style, feedback_message, quality_color
from infantcam.core.frames import CapturedImage, FrameHistory, PixelBuffer, ViewType, decode_image, encode_jpeg
from infantcam.core.overlay import build_overlay, draw_overlay
from infantcam.core.quality import QualityMetrics, analyze_frame
from infantcam.core.sampler import FrameSource, OpenCVFrameSource
from infantcam.core.session import CaptureSession, CaptureState
from infantcam.core.storage import SubmissionStore, decode_base64_image

log = logging.getLogger(__name__)


def presentation(metrics: QualityMetrics) -> dict:
    """Everything a client needs to render one tick."""
    bg, fg = banner_style(metrics)
    return {
        "metrics": metrics.to_dict(),
        "feedback": feedback_message(metrics),
        "color": quality_color(metrics),
        "banner": {"background": bg, "foreground": fg},
        "overlay": build_overlay(metrics).to_dict(),
    }


class CaptureService:
    """Owns the live capture sessions, captured stills and the submission store."""

    def __init__(self, store: Optional[SubmissionStore] = None,
                 source_factory: Callable[[], FrameSource] = OpenCVFrameSource,
                 session_kwargs: Optional[dict] = None):
        self.store = store or SubmissionStore()
        self.source_factory = source_factory
        self.session_kwargs = session_kwargs or {}
        self.sessions: Dict[ViewType, CaptureSession] = {}
        self.captured: Dict[ViewType, CapturedImage] = {}
        self._histories: "OrderedDict[str, FrameHistory]" = OrderedDict()

    # ── remote analysis (client streams frames to us) ────────────────────────
    def _history_for(self, session_id):
        hist = self._histories.pop(session_id, None)
        if hist is None:
            hist = FrameHistory()
        self._histories[session_id] = hist
        while len(self._histories) > config.ANALYZE_SESSIONS_MAX:
            evicted, _ = self._histories.popitem(last=False)
            log.info("analyze_history_evicted", extra={"session_id": evicted})
        return hist

    def analyze_upload(self, session_id, raw):
        img = decode_image(raw)
        if img is None:
            return None
        buf = PixelBuffer.from_bgr(img)
        hist = self._history_for(session_id)
        metrics = analyze_frame(buf, hist)
        hist.append(buf)
        return presentation(metrics)

    def reset_analysis(self, session_id):
        return self._histories.pop(session_id, None) is not None

    # ── server-side camera sessions ──────────────────────────────────────────
    def _on_capture(self, image):
        self.captured[image.view] = image

    def start_capture(self, view):
        view = ViewType(view)
        current = self.sessions.get(view)
        # a running session must be cancelled first; a failed one is cancelled here
        if current is not None:
            if current.state is CaptureState.FAILED:
                current.cancel()
            elif current.state is not CaptureState.CAPTURED:
                raise InvalidSessionEventError("start", current.state.value)
        # a retake is a brand-new session
        session = CaptureSession(view, self.source_factory(), self._on_capture, **self.session_kwargs)
        self.sessions[view] = session
        self.captured.pop(view, None)
        session.start()
        log.info("capture_started", extra={"view": view.value})
        return session

    def session(self, view):
        view = ViewType(view)
        s = self.sessions.get(view)
        if s is None:
            raise InvalidSessionEventError("query", CaptureState.IDLE.value)
        return s

    def status(self, view):
        s = self.session(view)
        out = s.status()
        out.update(presentation(s.metrics))
        out["feedback"] = s.message
        return out

    def preview(self, view):
        """Last analysed frame with the guide overlay drawn on, as JPEG; None before the first tick."""
        s = self.session(view)
        frame = s.preview_frame()
        if frame is None:
            return None
        return encode_jpeg(draw_overlay(frame, build_overlay(s.metrics)))

    def manual_capture(self, view):
        return self.session(view).request_manual_capture()

    def retry(self, view):
        self.session(view).retry()

    def cancel(self, view):
        s = self.sessions.pop(ViewType(view), None)
        if s is not None:
            s.cancel()

    def shutdown(self):
        for view in list(self.sessions):
            self.cancel(view)

    # ── submission ───────────────────────────────────────────────────────────
    def submit(self, images_b64, measurements):
        images = {}
        for v in ViewType:
            payload = (images_b64 or {}).get(v.value)
            if payload:
                images[v.value] = decode_base64_image(payload)
            elif v in self.captured:
                images[v.value] = self.captured[v].jpeg
        rec = self.store.submit(images, measurements)
        self.captured.clear()
        return rec
