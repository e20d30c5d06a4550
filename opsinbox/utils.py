import json
import logging
from datetime import datetime, timezone

audit_logger = logging.getLogger("opsinbox.audit")


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the application logger."""
    logger = logging.getLogger("opsinbox")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_audit(event: str, fields: dict | None = None, repository=None) -> dict:
    """Emit a structured audit entry as one JSON line and record it in the activity log."""
    fields = fields or {}
    payload = {"ts": utc_now_iso(), "event": event, **fields}
    audit_logger.info(json.dumps(payload, default=str))
    if repository is not None:
        try:
            repository.log_activity(event, fields)
        except Exception as e:
            audit_logger.error(f"Failed to record activity {event}: {e}")
    return payload
