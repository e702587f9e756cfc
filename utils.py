import logging
import re
from decimal import Decimal
from typing import Any

from fastapi import Request

SERVICE_NAME = "qbo-invoice-assistant"
SERVICE_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return float(value)
        except Exception:
            return None
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value)
        if not cleaned or cleaned in {"-", ".", "-.", ".-"}:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None

def safe_exception_message(exc: BaseException) -> str:
    """Return a safe string representation of an exception without triggering nested errors."""
    try:
        text = str(exc)
    except Exception:
        text = ""
    if text:
        return text
    try:
        return exc.__class__.__name__
    except Exception:
        return "UnknownException"

def mask_secret(value: str | None, visible: int = 5) -> str:
    """Show only the first few characters of a token or tenant id in logs."""
    if not value:
        return "<missing>"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}..."

def get_services(request: Request):
    """FastAPI dependency returning the per-process service graph attached to the app."""
    return request.app.state.services
