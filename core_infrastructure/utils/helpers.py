"""
Utility Helper Functions
========================
Small shared helpers: JSON sanitation, control-character scrubbing for decoded
records, content digests and pendulum-based clock access.
"""

import math
import re
import structlog
from typing import Any, Dict, List
from datetime import datetime
import pendulum
import xxhash

logger = structlog.get_logger(__name__)

# C0/C1 control characters; tab, newline and carriage return are kept
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

UNKNOWN_COLUMN = "unknown_column"


def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively sanitize NaN/Inf values for JSON serialization.

    Handles Python floats and NumPy scalars (decoded spreadsheets hand us
    np.float64 values).

    Examples:
        >>> sanitize_for_json({'value': float('nan')})
        {'value': None}
        >>> sanitize_for_json([1.0, float('inf'), 3.0])
        [1.0, None, 3.0]
    """
    if isinstance(obj, dict):
        return {k: sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [sanitize_for_json(item) for item in obj]
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif hasattr(obj, '__array__') and hasattr(obj, 'dtype'):
        try:
            import numpy as np
            if np.isnan(obj) or np.isinf(obj):
                return None
            return obj.item()
        except (TypeError, ValueError, ImportError):
            pass
        return obj
    else:
        return obj


def strip_control_chars(value: str) -> str:
    """Remove control characters that break JSON encoding and spreadsheet rendering."""
    return _CONTROL_CHARS.sub('', value)


def sanitize_records(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Scrub decoded records before they enter the transformer.

    Keys and string values lose control characters, blank keys become
    "unknown_column" (suffixed when that name is already taken) and NaN/Inf
    values become None.
    """
    cleaned: List[Dict[str, Any]] = []
    for record in records:
        if not isinstance(record, dict):
            cleaned.append(record)
            continue
        row: Dict[str, Any] = {}
        for key, value in record.items():
            clean_key = strip_control_chars(str(key)).strip()
            if not clean_key:
                clean_key = UNKNOWN_COLUMN
                suffix = 1
                while clean_key in row:
                    suffix += 1
                    clean_key = f"{UNKNOWN_COLUMN}_{suffix}"
            if isinstance(value, str):
                value = strip_control_chars(value)
            row[clean_key] = sanitize_for_json(value)
        cleaned.append(row)
    return cleaned


def safe_path_segment(value: str) -> str:
    """Make a user-supplied name usable inside a blob path."""
    segment = _UNSAFE_PATH_CHARS.sub('_', value).strip('._')
    return segment or 'unnamed'


def content_digest(data: bytes) -> str:
    """Fast non-cryptographic digest used to correlate chunks and blobs in logs."""
    return xxhash.xxh64(data).hexdigest()


def get_utc_now() -> datetime:
    """Current UTC time as a timezone-aware datetime."""
    return pendulum.now('UTC')


def get_iso8601_timestamp() -> str:
    return pendulum.now('UTC').to_iso8601_string()
