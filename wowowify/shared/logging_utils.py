"""
Structured logging helpers.

Every record goes to the ``wowowify`` logger with its dimensions attached as
``custom_dimensions``, which Application Insights indexes. Values are
flattened to plain scalars first: enum members become their value, byte
buffers become their size and long strings (prompts, URLs) are cut short.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional

LOGGER_NAME = "wowowify"
MAX_DIMENSION_LENGTH = 200

_LOGGER = logging.getLogger(LOGGER_NAME)


def _scalar(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str) and len(value) > MAX_DIMENSION_LENGTH:
        return value[:MAX_DIMENSION_LENGTH] + "..."
    return value


def dimensions(run_trace_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    """Drop unset fields and tag the rest with the run id."""
    dims = {name: _scalar(value) for name, value in fields.items() if value is not None}
    if run_trace_id:
        dims["runTraceId"] = run_trace_id
    return dims


def log(level: int, run_trace_id: Optional[str], message: str, **fields: Any) -> None:
    if not _LOGGER.isEnabledFor(level):
        return
    dims = dimensions(run_trace_id, **fields)
    try:
        _LOGGER.log(level, message, extra={"custom_dimensions": dims})
    except Exception:
        # some hosts reject extra LogRecord attributes
        _LOGGER.log(level, "%s | %s", message, dims)


def info(run_trace_id: Optional[str], message: str, **fields: Any) -> None:
    log(logging.INFO, run_trace_id, message, **fields)


def warning(run_trace_id: Optional[str], message: str, **fields: Any) -> None:
    log(logging.WARNING, run_trace_id, message, **fields)


def error(run_trace_id: Optional[str], message: str, **fields: Any) -> None:
    log(logging.ERROR, run_trace_id, message, **fields)
