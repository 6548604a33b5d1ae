import logging
import sys

from infantcam import config

# Attributes every LogRecord carries; anything else arrived through extra={...}
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class KVFormatter(logging.Formatter):
    def format(self, record):
        base = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k not in _RESERVED and not k.startswith("_"):
                base[k] = v
        line = " | ".join(f"{k}={v}" for k, v in base.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(KVFormatter())


def setup_logging(level=None):
    logging.root.handlers.clear()
    logging.root.setLevel(level or config.LOG_LEVEL)
    logging.root.addHandler(_handler)
    for noisy in ["uvicorn", "uvicorn.error", "uvicorn.access", "multipart", "python_multipart"]:
        logging.getLogger(noisy).setLevel(logging.WARNING)
