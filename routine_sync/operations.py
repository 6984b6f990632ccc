"""Uniform result envelope for public operations."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from routine_sync.models import OperationResult, utc_now

logger = logging.getLogger(__name__)


def _to_payload(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "to_record"):
        return value.to_record()
    if isinstance(value, list):
        return [_to_payload(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_payload(item) for key, item in value.items()}
    return value


def safe_execute(fn_name: str, handler: Callable[[], Any]) -> OperationResult:
    """Run ``handler`` and capture its outcome; nothing escapes."""
    started = time.perf_counter()
    meta: dict[str, Any] = {"fn_name": fn_name, "timestamp": utc_now().isoformat()}
    try:
        data = _to_payload(handler())
    except Exception as exc:
        meta["duration_ms"] = int((time.perf_counter() - started) * 1000)
        meta["error_type"] = type(exc).__name__
        logger.warning("%s failed: %s: %s", fn_name, type(exc).__name__, exc, exc_info=True)
        return OperationResult(ok=False, error=str(exc) or type(exc).__name__, meta=meta)
    meta["duration_ms"] = int((time.perf_counter() - started) * 1000)
    return OperationResult(ok=True, data=data, meta=meta)
