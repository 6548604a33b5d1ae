"""
Tests for the capture session state machine.
"""
import asyncio

import cv2
import numpy as np
import pytest

from infantcam.core.errors import CaptureFailedError, InvalidSessionEventError
from infantcam.core.feedback import MSG_CAPTURED, MSG_INITIAL
from infantcam.core.quality import Quality
from infantcam.core.sampler import FrameSampler
from infantcam.core.session import CaptureSession, CaptureState

from conftest import FakeSource, solid_bgr, stripes_bgr

TICK = 400


def analyzing_session(source, captured, clock, **kw):
    s = CaptureSession("front", source, captured.append, clock=clock, **kw)
    assert s.acquire() is True
    assert s.state is CaptureState.WARMING
    s.start_analyzing()
    return s


def tick(session, clock, n=1):
    fired = False
    for _ in range(n):
        clock.advance(TICK)
        fired = session.process_tick() or fired
    return fired


class TestLifecycle:

    def test_initial_state(self, gray_source, captured):
        s = CaptureSession("left", gray_source, captured.append)
        assert s.state is CaptureState.IDLE
        assert s.message == MSG_INITIAL
        assert s.metrics.overall_quality is Quality.POOR
        assert not s.is_analyzing and not s.is_capturing and not s.show_manual_override

    def test_no_ticks_before_analysis(self, gray_source, captured, clock):
        s = CaptureSession("front", gray_source, captured.append, clock=clock)
        s.acquire()
        assert s.process_tick() is False
        assert s.metrics.overall_quality is Quality.POOR
        assert len(s.history) == 0

    def test_ticks_update_metrics_and_history(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 5)
        assert s.metrics.overall_quality is Quality.GOOD
        assert s.message == "Center the infant in the frame"
        assert len(s.history) == 3

    def test_acquisition_failure_is_terminal(self, captured):
        src = FakeSource(fail_open=True)
        s = CaptureSession("front", src, captured.append)
        assert s.acquire() is False
        assert s.state is CaptureState.FAILED
        assert "camera permissions" in s.error
        with pytest.raises(InvalidSessionEventError):
            s.start_analyzing()
        s.cancel()
        assert s.state is CaptureState.IDLE
        assert s.error is None


class TestManualOverride:

    def test_reveal_after_twenty_five_ticks_and_auto_capture_stays_live(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 24)
        assert s.state is CaptureState.ANALYZING
        tick(s, clock)
        assert s.state is CaptureState.MANUAL_READY
        assert s.show_manual_override and s.is_analyzing

        # ticks keep running underneath
        tick(s, clock, 3)
        assert s.state is CaptureState.MANUAL_READY

        gray_source.set_frames(stripes_bgr())
        assert tick(s, clock) is True
        assert s.state is CaptureState.CAPTURING
        assert s.message == MSG_CAPTURED

        image = s.complete_capture()
        assert s.state is CaptureState.CAPTURED
        assert captured == [image]
        assert image.manual is False
        assert gray_source.stop_calls >= 1

    def test_manual_capture_bypasses_quality(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 25)
        assert s.metrics.overall_quality is not Quality.EXCELLENT
        assert s.request_manual_capture() is True
        assert s.state is CaptureState.CAPTURING
        image = s.complete_capture()
        assert image.manual is True
        assert image.view.value == "front"
        assert cv2.imdecode(np.frombuffer(image.jpeg, np.uint8), cv2.IMREAD_COLOR) is not None

    def test_manual_capture_not_offered_yet(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 3)
        with pytest.raises(InvalidSessionEventError):
            s.request_manual_capture()

    def test_retry_hides_option_and_restarts_dwell(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 25)
        s.retry()
        assert s.state is CaptureState.ANALYZING
        assert not s.show_manual_override
        tick(s, clock, 24)
        assert s.state is CaptureState.ANALYZING
        tick(s, clock)
        assert s.state is CaptureState.MANUAL_READY

    def test_retry_only_from_manual_ready(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        with pytest.raises(InvalidSessionEventError):
            s.retry()

    def test_dwell_counts_skipped_ticks(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        gray_source.force_size = (0, 0)
        tick(s, clock, 25)
        assert s.state is CaptureState.MANUAL_READY
        assert len(s.history) == 0


class TestCaptureLatch:

    def test_auto_capture_fires_once(self, stripes_source, captured, clock):
        s = analyzing_session(stripes_source, captured, clock)
        assert tick(s, clock, 2) is False
        assert tick(s, clock) is True
        # later ticks and a manual tap are absorbed
        assert tick(s, clock) is False
        assert s.request_manual_capture() is False
        s.complete_capture()
        assert len(captured) == 1

    def test_manual_then_auto_is_one_capture(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 25)
        assert s.request_manual_capture() is True
        gray_source.set_frames(stripes_bgr())
        assert s.apply(s.measure()) is False
        assert s.request_manual_capture() is False
        s.complete_capture()
        assert len(captured) == 1
        with pytest.raises(InvalidSessionEventError):
            s.complete_capture()

    def test_capture_falls_back_to_last_analyzed_frame(self, stripes_source, captured, clock):
        s = analyzing_session(stripes_source, captured, clock)
        tick(s, clock, 3)
        stripes_source.fail_reads = 1
        image = s.complete_capture()
        assert (image.width, image.height) == (100, 100)
        assert len(captured) == 1


class TestTransientErrors:

    def test_failed_tick_keeps_previous_metrics(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 2)
        before = s.metrics
        gray_source.fail_reads = 1
        assert tick(s, clock) is False
        assert s.metrics is before
        assert len(s.history) == 2

    def test_zero_area_tick_is_skipped(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        gray_source.force_size = (0, 0)
        tick(s, clock)
        assert s.metrics.overall_quality is Quality.POOR
        assert len(s.history) == 0


class TestCancel:

    def test_cancel_releases_source_and_resets(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        tick(s, clock, 4)
        s.cancel()
        assert gray_source.stop_calls == 1
        assert s.state is CaptureState.IDLE
        assert len(s.history) == 0
        assert s.metrics.overall_quality is Quality.POOR
        assert s.message == MSG_INITIAL

        # a fresh cycle starts clean
        assert s.acquire() is True
        assert s.state is CaptureState.WARMING
        assert len(s.history) == 0
        s.start_analyzing()
        tick(s, clock)
        assert len(s.history) == 1
        assert s.metrics.is_stable is False

    def test_cancel_after_capture_latch_resets_latch(self, stripes_source, captured, clock):
        s = analyzing_session(stripes_source, captured, clock)
        tick(s, clock, 3)
        assert s.state is CaptureState.CAPTURING
        s.cancel()
        assert captured == []
        s.acquire()
        s.start_analyzing()
        assert tick(s, clock, 3) is True


def fast_session(source, captured, **kw):
    kw.setdefault("warmup_ms", 0)
    kw.setdefault("settle_ms", 0)
    return CaptureSession("right", source, captured.append, sampler=FrameSampler(interval_ms=5), **kw)


class TestAsyncDriver:

    def test_auto_capture_end_to_end(self, stripes_source, captured):
        s = fast_session(stripes_source, captured)
        updates = []
        s.on_update = lambda m, msg: updates.append(m.overall_quality)

        async def main():
            return await asyncio.wait_for(s.start(), timeout=5)

        image = asyncio.run(main())
        assert image is not None and image.view.value == "right"
        assert s.state is CaptureState.CAPTURED
        assert captured == [image]
        assert stripes_source.stop_calls >= 1
        assert not stripes_source.opened
        assert updates[-1] is Quality.EXCELLENT
        assert updates[:2] == [Quality.GOOD, Quality.GOOD]

    def test_acquisition_failure(self, captured):
        src = FakeSource(fail_open=True)
        s = fast_session(src, captured)

        async def main():
            return await asyncio.wait_for(s.start(), timeout=5)

        assert asyncio.run(main()) is None
        assert s.state is CaptureState.FAILED
        assert captured == []

    def test_cancel_mid_analysis_releases_camera(self, gray_source, captured):
        s = fast_session(gray_source, captured)

        async def main():
            task = s.start()
            for _ in range(200):
                if len(s.history) >= 2:
                    break
                await asyncio.sleep(0.01)
            s.cancel()
            assert gray_source.stop_calls >= 1
            assert not gray_source.opened
            assert s.state is CaptureState.IDLE
            await asyncio.sleep(0.05)
            return task

        task = asyncio.run(main())
        assert task.cancelled()
        assert captured == []
        assert len(s.history) == 0

    def test_manual_capture_wakes_loop(self, gray_source, captured):
        s = fast_session(gray_source, captured, manual_reveal_ms=0)

        async def main():
            task = s.start()
            for _ in range(200):
                if s.state is CaptureState.MANUAL_READY:
                    break
                await asyncio.sleep(0.01)
            assert s.request_manual_capture() is True
            assert s.request_manual_capture() is False
            return await asyncio.wait_for(task, timeout=5)

        image = asyncio.run(main())
        assert image.manual is True
        assert len(captured) == 1
        assert not gray_source.opened

    def test_start_twice_rejected(self, gray_source, captured):
        s = fast_session(gray_source, captured, warmup_ms=50)

        async def main():
            s.start()
            with pytest.raises(InvalidSessionEventError):
                s.start()
            s.cancel()

        asyncio.run(main())
        assert s.state is CaptureState.IDLE

    def test_encoder_failure_fails_session(self, stripes_source, captured):
        def broken_encoder(frame):
            raise ValueError("JPEG encoding failed")

        s = fast_session(stripes_source, captured, encoder=broken_encoder)

        async def main():
            return await asyncio.wait_for(s.start(), timeout=5)

        assert asyncio.run(main()) is None
        assert s.state is CaptureState.FAILED
        assert s.error == "Capture failed. Please try again."
        assert captured == []
        assert not stripes_source.opened

    def test_handoff_failure_fails_session(self, stripes_source):
        def broken_handoff(image):
            raise RuntimeError("downstream unavailable")

        s = CaptureSession("front", stripes_source, broken_handoff, warmup_ms=0, settle_ms=0,
                           sampler=FrameSampler(interval_ms=5))

        async def main():
            return await asyncio.wait_for(s.start(), timeout=5)

        assert asyncio.run(main()) is None
        assert s.state is CaptureState.FAILED
        assert s.captured is not None
        assert not stripes_source.opened

    def test_update_callback_failure_does_not_stop_ticks(self, stripes_source, captured):
        s = fast_session(stripes_source, captured)

        def broken_update(metrics, message):
            raise RuntimeError("listener gone")

        s.on_update = broken_update

        async def main():
            return await asyncio.wait_for(s.start(), timeout=5)

        image = asyncio.run(main())
        assert image is not None
        assert s.state is CaptureState.CAPTURED


class TestCaptureFailures:

    def test_encoder_failure_raises_and_releases(self, stripes_source, captured, clock):
        def broken_encoder(frame):
            raise ValueError("JPEG encoding failed")

        s = analyzing_session(stripes_source, captured, clock, encoder=broken_encoder)
        tick(s, clock, 3)
        assert s.state is CaptureState.CAPTURING
        with pytest.raises(CaptureFailedError) as exc:
            s.complete_capture()
        assert exc.value.details["stage"] == "encode"
        assert s.state is CaptureState.FAILED
        assert not stripes_source.opened
        assert captured == []

    def test_preview_frame_is_last_analyzed(self, gray_source, captured, clock):
        s = analyzing_session(gray_source, captured, clock)
        assert s.preview_frame() is None
        tick(s, clock)
        frame = s.preview_frame()
        assert frame.shape == (100, 100, 3)
