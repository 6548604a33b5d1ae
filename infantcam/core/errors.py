# infantcam/core/errors.py
from __future__ import annotations


class CaptureError(Exception):
    """Base error carrying a stable code for API responses."""

    def __init__(self, message: str, error_code: str, details: dict | None = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# ── Source ───────────────────────────────────────────────────────────────────
class SourceAcquisitionError(CaptureError):
    """Camera could not be opened (missing device, permission denied)."""

    def __init__(self, source: str, reason: str | None = None):
        super().__init__(
            message="Unable to access camera. Please ensure camera permissions are granted.",
            error_code="SOURCE_ACQUISITION_FAILED",
            details={"source": source, "reason": reason},
        )


class FrameReadError(CaptureError):
    def __init__(self, reason: str | None = None):
        super().__init__(
            message="Failed to read frame from camera",
            error_code="FRAME_READ_FAILED",
            details={"reason": reason},
        )


class CaptureFailedError(CaptureError):
    """Still could not be encoded or handed off."""

    def __init__(self, stage: str, reason: str | None = None):
        super().__init__(
            message="Capture failed. Please try again.",
            error_code="CAPTURE_FAILED",
            details={"stage": stage, "reason": reason},
        )


# ── Session ──────────────────────────────────────────────────────────────────
class InvalidSessionEventError(CaptureError):
    """User event not allowed in the session's current state."""

    def __init__(self, event: str, state: str):
        super().__init__(
            message=f"Cannot {event} while session is {state}",
            error_code="INVALID_SESSION_EVENT",
            details={"event": event, "state": state},
        )


# ── Submission ───────────────────────────────────────────────────────────────
class SubmissionError(CaptureError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message=message, error_code="SUBMISSION_INVALID", details=details)


class UnknownViewError(CaptureError):
    def __init__(self, view: str, allowed: list[str]):
        super().__init__(
            message=f"Unknown view '{view}'",
            error_code="UNKNOWN_VIEW",
            details={"allowed": allowed},
        )
