import math
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any


def make_json_safe(value: Any) -> Any:
    """
    Convert spreadsheet cell values into JSON-serialisable structures for the
    raw-row audit snapshot, preserving as much fidelity as possible.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise convert to string to avoid precision loss
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, float):
        # NaN/inf are not valid JSON
        return value if math.isfinite(value) else None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    # Fallback to string representation for unsupported types
    return str(value)
