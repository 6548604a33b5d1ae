import logging
import time
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, UploadFile, File, Form
from fastapi.responses import JSONResponse, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from starlette.requests import Request

from infantcam import config
from infantcam.logging_config import setup_logging
from infantcam.core.errors import CaptureError, InvalidSessionEventError, SubmissionError, UnknownViewError
from infantcam.core.feedback import camera_instructions
from infantcam.core.frames import ViewType
from infantcam.core.service import CaptureService
from infantcam.core.storage import Measurements

# ─────────────── Setup ────────────────
setup_logging()
app = FastAPI(title="Infant Capture API")
log = logging.getLogger(__name__)
SERVICE = CaptureService()


# ───────────── Schemas ─────────────
class SubmitImages(BaseModel):
    front: Optional[str] = None
    left: Optional[str] = None
    right: Optional[str] = None


class AnthropometricData(BaseModel):
    ageMonths: float
    heightCm: float
    weightKg: float


class SubmitRequest(BaseModel):
    images: Optional[SubmitImages] = None
    anthropometricData: AnthropometricData


# ───────────── Lifecycle ─────────────
@app.on_event("shutdown")
def _shutdown_release_cameras():
    SERVICE.shutdown()
    log.info("capture sessions released")


# ───────────── Middleware ─────────────
@app.middleware("http")
async def http_logger(request: Request, call_next):
    start = time.perf_counter()
    path = request.url.path
    method = request.method
    client = request.client.host if request.client else "unknown"
    try:
        response = await call_next(request)
        dt = int((time.perf_counter() - start) * 1000)
        logging.getLogger("infantcam.http").info(
            "http",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "client": client,
                "ms": dt,
            },
        )
        return response
    except Exception as e:
        dt = int((time.perf_counter() - start) * 1000)
        logging.getLogger("infantcam.http").exception(
            "http_error",
            extra={"method": method, "path": path, "client": client, "ms": dt, "error": str(e)},
        )
        raise


# ───────────── Errors ─────────────
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"error": "validation_error", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(CaptureError)
async def capture_error_handler(request: Request, exc: CaptureError):
    if isinstance(exc, InvalidSessionEventError):
        status = 409
    elif isinstance(exc, (SubmissionError, UnknownViewError)):
        status = 400
    else:
        status = 500
    log.warning("capture_error", extra={"path": request.url.path, "error_code": exc.error_code})
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger("infantcam.api.server").exception("unhandled_exception")
    return JSONResponse(status_code=500, content={"error": str(exc)})


def _view(view: str) -> ViewType:
    try:
        return ViewType(view)
    except ValueError:
        raise UnknownViewError(view, [v.value for v in ViewType])


# ───────────── Health ─────────────
@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "camera_index": config.CAMERA_INDEX,
        "active_sessions": {v.value: s.state.value for v, s in SERVICE.sessions.items()},
        "captured": sorted(v.value for v in SERVICE.captured),
        "submissions": SERVICE.store.count(),
    }


@app.get("/instructions/{view}")
def instructions(view: str):
    return camera_instructions(_view(view))._asdict()


# ───────────── Remote frame analysis ─────────────
@app.post("/analyze")
async def analyze(
    session_id: str = Form(...),
    file: UploadFile = File(...),
):
    raw = await file.read()
    if not raw:
        return JSONResponse(status_code=400, content={"error": "Empty frame upload"})
    try:
        out = SERVICE.analyze_upload(session_id, raw)
    except Exception as e:
        # a frame we cannot read is a skipped tick, not a failure
        log.warning("analyze_tick_skipped", extra={"session_id": session_id, "error": repr(e)})
        return {"skipped": True}
    if out is None:
        return JSONResponse(status_code=400, content={"error": "Invalid image"})
    return out


@app.delete("/analyze/{session_id}")
def analyze_reset(session_id: str):
    return {"reset": SERVICE.reset_analysis(session_id)}


# ───────────── Server-side camera capture ─────────────
@app.post("/capture/{view}")
async def capture_start(view: str):
    session = SERVICE.start_capture(_view(view))
    return session.status()


@app.get("/capture/{view}")
def capture_status(view: str):
    return SERVICE.status(_view(view))


@app.post("/capture/{view}/manual")
async def capture_manual(view: str):
    v = _view(view)
    fired = SERVICE.manual_capture(v)
    return {"triggered": fired, **SERVICE.session(v).status()}


@app.post("/capture/{view}/retry")
async def capture_retry(view: str):
    v = _view(view)
    SERVICE.retry(v)
    return SERVICE.session(v).status()


@app.post("/capture/{view}/cancel")
async def capture_cancel(view: str):
    SERVICE.cancel(_view(view))
    return {"view": view, "state": "idle"}


@app.get("/capture/{view}/image")
def capture_image(view: str):
    image = SERVICE.captured.get(_view(view))
    if image is None:
        return JSONResponse(status_code=404, content={"error": f"No {view} image captured"})
    return Response(content=image.jpeg, media_type=image.content_type)


@app.get("/capture/{view}/preview")
def capture_preview(view: str):
    jpeg = SERVICE.preview(_view(view))
    if jpeg is None:
        return JSONResponse(status_code=404, content={"error": f"No {view} frame analysed yet"})
    return Response(content=jpeg, media_type="image/jpeg")


# ───────────── Submit ─────────────
@app.post("/submit")
def submit(body: SubmitRequest):
    log.info("api_submit_in", extra={"has_images": body.images is not None})
    images = {}
    if body.images is not None:
        images = {k: v for k, v in (("front", body.images.front),
                                    ("left", body.images.left),
                                    ("right", body.images.right)) if v}
    data = body.anthropometricData
    rec = SERVICE.submit(images, Measurements(data.ageMonths, data.heightCm, data.weightKg))
    log.info("api_submit_out", extra={"id": rec.id})
    return {"message": "Success", "id": rec.id}


@app.get("/submissions/{record_id}")
def submission(record_id: str):
    rec = SERVICE.store.get(record_id)
    if rec is None:
        return JSONResponse(status_code=404, content={"error": f"No submission {record_id}"})
    return asdict(rec)


# ───────────── Root ─────────────
@app.get("/")
def root():
    return {
        "message": "Infant Capture API",
        "try": ["/healthz", "GET /instructions/{view}", "POST /analyze",
                "POST /capture/{view}", "POST /submit"],
    }
