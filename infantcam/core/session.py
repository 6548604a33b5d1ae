# infantcam/core/session.py
"""Capture session: tick loop, auto-capture latch and manual override.

Events (`request_manual_capture`, `retry`, `cancel`) and every state change run
on the event-loop thread. Only source I/O and frame analysis are pushed to a
worker thread.
"""
from __future__ import annotations
import asyncio
import functools
import logging
import time
from enum import Enum
from typing import Callable, Optional

import numpy as np

from infantcam import config
from infantcam.core import feedback
from infantcam.core.errors import (
    CaptureError,
    CaptureFailedError,
    InvalidSessionEventError,
    SourceAcquisitionError,
)
from infantcam.core.frames import CapturedImage, FrameHistory, PixelBuffer, ViewType, encode_jpeg
from infantcam.core.quality import Quality, QualityMetrics, analyze_frame
from infantcam.core.sampler import FrameSampler, FrameSource

log = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    WARMING = "warming"
    ANALYZING = "analyzing"
    MANUAL_READY = "manual_ready"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    FAILED = "failed"


TICKING = (CaptureState.ANALYZING, CaptureState.MANUAL_READY)


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


class CaptureSession:
    def __init__(
        self,
        view: ViewType | str,
        source: FrameSource,
        on_capture: Callable[[CapturedImage], None],
        *,
        sampler: Optional[FrameSampler] = None,
        on_update: Optional[Callable[[QualityMetrics, str], None]] = None,
        encoder: Callable[[np.ndarray], bytes] = encode_jpeg,
        clock: Callable[[], int] = monotonic_ms,
        warmup_ms: int = config.WARMUP_MS,
        manual_reveal_ms: int = config.MANUAL_REVEAL_MS,
        settle_ms: int = config.CAPTURE_SETTLE_MS,
    ):
        self.view = ViewType(view)
        self.source = source
        self.on_capture = on_capture
        self.on_update = on_update
        self.sampler = sampler or FrameSampler()
        self.encoder = encoder
        self.clock = clock
        self.warmup_ms = warmup_ms
        self.manual_reveal_ms = manual_reveal_ms
        self.settle_ms = settle_ms

        self.history = FrameHistory()
        self.state = CaptureState.IDLE
        self.metrics = QualityMetrics.initial()
        self.message = feedback.MSG_INITIAL
        self.error: Optional[str] = None
        self.captured: Optional[CapturedImage] = None

        self._latched = False
        self._manual = False
        self._dwell_start: Optional[int] = None
        self._last_buffer: Optional[PixelBuffer] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None

    # ── flags as seen by the view ────────────────────────────────────────────
    @property
    def is_analyzing(self) -> bool:
        return self.state in TICKING

    @property
    def is_capturing(self) -> bool:
        return self.state in (CaptureState.CAPTURING, CaptureState.CAPTURED)

    @property
    def show_manual_override(self) -> bool:
        return self.state is CaptureState.MANUAL_READY

    def status(self) -> dict:
        return {
            "view": self.view.value,
            "state": self.state.value,
            "metrics": self.metrics.to_dict(),
            "feedback": self.message,
            "color": feedback.quality_color(self.metrics),
            "showManualCapture": self.show_manual_override,
            "error": self.error,
        }

    def _enter(self, state: CaptureState) -> None:
        if state is not self.state:
            log.info("session_state", extra={"view": self.view.value, "from": self.state.value, "to": state.value})
            self.state = state

    # ── synchronous transitions ──────────────────────────────────────────────
    def acquire(self) -> bool:
        """Open the source and enter WARMING. Failure is terminal for the session."""
        self._ensure_idle()
        try:
            self.source.open()
        except Exception as e:
            return self._opened(e)
        return self._opened(None)

    def _ensure_idle(self) -> None:
        if self.state is not CaptureState.IDLE:
            raise InvalidSessionEventError("start", self.state.value)

    def _opened(self, err: Optional[Exception]) -> bool:
        if err is None:
            self._enter(CaptureState.WARMING)
            return True
        if not isinstance(err, SourceAcquisitionError):
            err = SourceAcquisitionError(type(self.source).__name__, reason=repr(err))
        self.source.stop()
        self._fail(err)
        return False

    def start_analyzing(self, now: Optional[int] = None) -> None:
        if self.state is not CaptureState.WARMING:
            raise InvalidSessionEventError("analyze", self.state.value)
        self._dwell_start = self.clock() if now is None else now
        self._enter(CaptureState.ANALYZING)

    def measure(self) -> Optional[tuple[PixelBuffer, QualityMetrics]]:
        """Sample and score the current frame; None when the tick should be skipped."""
        history = list(self.history)
        buf = self.sampler.sample(self.source)
        if buf is None:
            return None
        return buf, analyze_frame(buf, history)

    def apply(self, result: Optional[tuple[PixelBuffer, QualityMetrics]], now: Optional[int] = None) -> bool:
        """Fold one tick's result into the session. Returns True if it fired a capture."""
        if self.state not in TICKING:
            return False
        now = self.clock() if now is None else now
        fired = False
        if result is not None:
            buf, metrics = result
            self.metrics = metrics
            self.message = feedback.feedback_message(metrics)
            self.history.append(buf)
            self._last_buffer = buf
            if self.on_update is not None:
                try:
                    self.on_update(metrics, self.message)
                except Exception:
                    log.exception("on_update_failed", extra={"view": self.view.value})
            if metrics.overall_quality is Quality.EXCELLENT:
                fired = self._trigger(manual=False)
        if not fired:
            self._check_dwell(now)
        return fired

    def process_tick(self, now: Optional[int] = None) -> bool:
        """One analysis tick on the calling thread."""
        if self.state not in TICKING:
            return False
        return self.apply(self._measure_or_skip(), now)

    def _measure_or_skip(self) -> Optional[tuple[PixelBuffer, QualityMetrics]]:
        try:
            return self.measure()
        except Exception as e:
            log.debug("tick_skipped", extra={"view": self.view.value, "error": repr(e)})
            return None

    def _check_dwell(self, now: int) -> None:
        if self.state is CaptureState.ANALYZING and self._dwell_start is not None \
                and now - self._dwell_start >= self.manual_reveal_ms:
            self._enter(CaptureState.MANUAL_READY)

    def _trigger(self, manual: bool) -> bool:
        if self._latched:
            return False
        self._latched = True
        self._manual = manual
        self.message = feedback.MSG_CAPTURED
        self._enter(CaptureState.CAPTURING)
        log.info("capture_triggered", extra={"view": self.view.value, "manual": manual})
        if self._wake is not None:
            self._wake.set()
        return True

    def request_manual_capture(self) -> bool:
        """User tapped Capture. A tap racing an in-flight capture is absorbed."""
        if self._latched:
            return False
        if self.state is not CaptureState.MANUAL_READY:
            raise InvalidSessionEventError("capture", self.state.value)
        return self._trigger(manual=True)

    def retry(self, now: Optional[int] = None) -> None:
        """Hide the manual option and restart the dwell timer."""
        if self.state is not CaptureState.MANUAL_READY:
            raise InvalidSessionEventError("retry", self.state.value)
        self._dwell_start = self.clock() if now is None else now
        self._enter(CaptureState.ANALYZING)

    def grab_still(self) -> np.ndarray:
        """Current frame for the final still; the last analysed frame if the read fails."""
        try:
            return self.source.read()
        except CaptureError as e:
            if self._last_buffer is None:
                raise
            log.warning("capture_read_fallback", extra={"view": self.view.value, "error": e.message})
            return self._last_buffer.to_bgr()

    def complete_capture(self, frame: Optional[np.ndarray] = None) -> CapturedImage:
        """Encode the still, release the source, hand the image off."""
        if self.state is not CaptureState.CAPTURING:
            raise InvalidSessionEventError("complete capture", self.state.value)
        if frame is None:
            try:
                frame = self.grab_still()
            except CaptureError as e:
                self.source.stop()
                self._fail(e)
                raise
        try:
            jpeg = self.encoder(frame)
        except Exception as e:
            self.source.stop()
            err = CaptureFailedError("encode", reason=repr(e))
            self._fail(err)
            raise err from e
        self.source.stop()
        h, w = frame.shape[:2]
        image = CapturedImage(view=self.view, jpeg=jpeg, width=w, height=h, manual=self._manual)
        self.captured = image
        self._enter(CaptureState.CAPTURED)
        log.info("capture_handoff", extra={"view": self.view.value, "bytes": len(jpeg), "manual": self._manual})
        try:
            self.on_capture(image)
        except Exception as e:
            err = CaptureFailedError("handoff", reason=repr(e))
            self._fail(err)
            raise err from e
        return image

    def preview_frame(self) -> Optional[np.ndarray]:
        """Last analysed frame as BGR, or None before the first tick."""
        if self._last_buffer is None:
            return None
        return self._last_buffer.to_bgr()

    def cancel(self) -> None:
        """Release the camera, then drop back to IDLE with a clean slate."""
        self.source.stop()
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.history.clear()
        self.metrics = QualityMetrics.initial()
        self.message = feedback.MSG_INITIAL
        self.error = None
        self.captured = None
        self._latched = False
        self._manual = False
        self._dwell_start = None
        self._last_buffer = None
        self._wake = None
        self._enter(CaptureState.IDLE)

    def _fail(self, err: CaptureError) -> None:
        self.error = err.message
        log.warning(
            "session_failed",
            extra={"view": self.view.value, "error_code": err.error_code, "reason": err.details.get("reason")},
        )
        self._enter(CaptureState.FAILED)

    # ── asyncio driver ───────────────────────────────────────────────────────
    def start(self) -> asyncio.Task:
        """Schedule `run()` on the running loop."""
        if self._task is not None and not self._task.done():
            raise InvalidSessionEventError("start", "starting")
        if self.state is not CaptureState.IDLE:
            raise InvalidSessionEventError("start", self.state.value)
        self._task = asyncio.get_running_loop().create_task(self.run())
        self._task.add_done_callback(self._log_task_result)
        return self._task

    def _log_task_result(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("session_task_failed", extra={"view": self.view.value, "state": self.state.value},
                      exc_info=exc)

    async def run(self) -> Optional[CapturedImage]:
        self._ensure_idle()
        gen = self._generation
        self._wake = asyncio.Event()
        try:
            opening = asyncio.ensure_future(asyncio.to_thread(self.source.open))
            opening.add_done_callback(functools.partial(self._release_if_stale, gen))
            err = None
            try:
                await asyncio.shield(opening)
            except Exception as e:
                err = e
            if not self._opened(err):
                return None
            await asyncio.sleep(self.warmup_ms / 1000.0)
            self.start_analyzing()

            while self.state in TICKING:
                # next tick is timed from the end of the previous one
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.sampler.interval_s)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
                if self.state not in TICKING:
                    break
                self.apply(await asyncio.to_thread(self._measure_or_skip))

            if self.state is not CaptureState.CAPTURING:
                return None
            if not self._manual:
                await asyncio.sleep(self.settle_ms / 1000.0)
            frame = await asyncio.to_thread(self.grab_still)
            return self.complete_capture(frame)
        except Exception as e:
            if not isinstance(e, CaptureError):
                log.exception("session_run_failed", extra={"view": self.view.value})
                e = CaptureFailedError(self.state.value, reason=repr(e))
            # nothing may leave a session stuck mid-capture
            if gen == self._generation and self.state not in (CaptureState.IDLE, CaptureState.FAILED):
                self.source.stop()
                self._fail(e)
            return None
        finally:
            if gen == self._generation and self.state is not CaptureState.CAPTURED:
                self.source.stop()

    def _release_if_stale(self, gen: int, fut: asyncio.Future) -> None:
        # an open that finishes after cancel() must not leave the camera running
        if gen != self._generation and not fut.cancelled() and fut.exception() is None \
                and self.state in (CaptureState.IDLE, CaptureState.FAILED):
            self.source.stop()
