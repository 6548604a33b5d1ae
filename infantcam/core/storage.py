import base64, binascii, logging, pickle, re, time, uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
from infantcam import config
from infantcam.core.errors import SubmissionError
from infantcam.core.frames import ViewType, decode_image

log = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


@dataclass
class Measurements:
    age_months: float
    height_cm: float
    weight_kg: float

    def validate(self):
        errors = {}
        if not (config.MIN_AGE_MONTHS <= self.age_months <= config.MAX_AGE_MONTHS):
            errors["ageMonths"] = (
                f"Age must be between {config.MIN_AGE_MONTHS} and {config.MAX_AGE_MONTHS} months"
            )
        if not self.height_cm > 0:
            errors["heightCm"] = "Height must be above 0 cm"
        if not self.weight_kg > 0:
            errors["weightKg"] = "Weight must be above 0 kg"
        if errors:
            raise SubmissionError("Invalid anthropometric data", details=errors)


@dataclass
class SubmissionRecord:
    id: str
    age_months: float
    height_cm: float
    weight_kg: float
    images: Dict[str, str]          # view -> path relative to the store root
    created_at: float = field(default_factory=time.time)


def decode_base64_image(payload: str) -> bytes:
    """Accept bare base64 or a data URL (data:image/jpeg;base64,...)."""
    content = _DATA_URL.sub("", payload.strip(), count=1)
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError):
        raise SubmissionError("Image is not valid base64")


class SubmissionStore:
    """Folder + index store: <root>/<id>/<view>.jpg plus a pickled record list."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else config.SUBMISSIONS_DIR
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_file = self.root / config.SUBMISSIONS_INDEX_FILE.name
        self._records = []
        self._load()

    def _load(self):
        if self.index_file.exists():
            with open(self.index_file, "rb") as f:
                data = pickle.load(f)
            self._records = [SubmissionRecord(**r) for r in data]
            log.info("Submissions loaded", extra={"count": len(self._records)})

    def persist(self):
        with open(self.index_file, "wb") as f:
            pickle.dump([r.__dict__ for r in self._records], f)
        log.info("Submissions persisted", extra={"count": len(self._records)})

    def _check_image(self, view, raw):
        if not raw:
            raise SubmissionError(f"Missing {view} image", details={"view": view})
        if len(raw) > config.MAX_IMAGE_BYTES:
            raise SubmissionError(
                f"Image {view} exceeds {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB limit",
                details={"view": view, "bytes": len(raw)},
            )
        if decode_image(raw) is None:
            raise SubmissionError(f"Image {view} could not be decoded", details={"view": view})

    def submit(self, images, measurements):
        """Validate and store one infant record. `images` maps view -> JPEG bytes."""
        missing = [v.value for v in ViewType if not images.get(v.value)]
        if missing:
            raise SubmissionError("Missing image data", details={"missing": missing})
        measurements.validate()
        for v in ViewType:
            self._check_image(v.value, images[v.value])

        record_id = str(uuid.uuid4())
        out_dir = self.root / record_id
        out_dir.mkdir(parents=True, exist_ok=False)
        paths = {}
        for v in ViewType:
            out = out_dir / f"{v.value}.jpg"
            out.write_bytes(images[v.value])
            paths[v.value] = str(out.relative_to(self.root))
            log.info("Image stored", extra={"id": record_id, "view": v.value, "bytes": len(images[v.value])})

        rec = SubmissionRecord(
            id=record_id,
            age_months=measurements.age_months,
            height_cm=measurements.height_cm,
            weight_kg=measurements.weight_kg,
            images=paths,
        )
        self._records.append(rec)
        self.persist()
        return rec

    def get(self, record_id):
        for r in self._records:
            if r.id == record_id:
                return r
        return None

    def count(self):
        return len(self._records)
