"""
Row normalization: one raw spreadsheet row -> canonical candidate fields.

Everything here is pure computation so it can be exercised directly against
literal row fixtures.
"""
import logging
import re
from datetime import date, datetime, time
from typing import Any, Dict, List, Mapping, Optional

from candidate_intake.domain.imports.processors.excel_processor import unwrap_cell_value
from candidate_intake.utils.phone import digits_only_phone

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_SKILL_SEPARATORS = re.compile(r"[,|;]")
_ABSENT_MARKERS = {"na", "n/a"}

NUMERIC_FIELDS = {"experience_years"}
LIST_FIELDS = {"skills"}


def _to_text(value: Any) -> Optional[str]:
    """Stringify a cell value; integral floats lose their trailing '.0'. Empty -> None."""
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    elif isinstance(value, datetime):
        text = value.date().isoformat() if value.time() == time(0, 0) else value.isoformat()
    elif isinstance(value, date):
        text = value.isoformat()
    else:
        text = str(value)
    text = text.strip()
    return text or None


def normalize_email(value: Any) -> Optional[str]:
    text = _to_text(value)
    if text is None:
        return None
    email = text.lower()
    if email in _ABSENT_MARKERS:
        return None
    if not EMAIL_PATTERN.match(email):
        return None
    return email


def parse_experience(value: Any) -> Optional[float]:
    """Extract the first decimal number ("5 yrs" -> 5.0, "5.5" -> 5.5)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _to_text(value)
    if text is None:
        return None
    match = _NUMBER_PATTERN.search(text)
    if not match:
        return None
    return float(match.group(0))


def split_skills(value: Any) -> List[str]:
    """Split a multi-value cell on commas, pipes or semicolons; trim, drop empties, de-duplicate."""
    if isinstance(value, (list, tuple, set)):
        parts = [_to_text(unwrap_cell_value(item)) for item in value]
    else:
        text = _to_text(value)
        parts = [part.strip() for part in _SKILL_SEPARATORS.split(text)] if text else []

    skills: List[str] = []
    seen = set()
    for part in parts:
        if not part:
            continue
        key = part.lower()
        if key in seen:
            continue
        seen.add(key)
        skills.append(part)
    return skills


def split_full_name(full_name: str) -> Dict[str, str]:
    """First whitespace token is the first name; the remaining tokens are the last name."""
    parts = str(full_name or "").split()
    if not parts:
        return {"first_name": "", "last_name": ""}
    return {"first_name": parts[0], "last_name": " ".join(parts[1:])}


def _normalize_value(field_name: str, value: Any) -> Any:
    if field_name == "email":
        return normalize_email(value)
    if field_name == "phone":
        return digits_only_phone(value)
    if field_name in NUMERIC_FIELDS:
        return parse_experience(value)
    if field_name in LIST_FIELDS:
        return split_skills(value) or None
    return _to_text(value)


def normalize_row(raw_row: Mapping[str, Any], mapping: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """
    Convert a raw header -> cell row into canonical candidate fields.

    Unmapped headers are ignored and absent values are omitted rather than
    stored as empty strings. When several headers map to the same field, the
    first usable value wins.
    """
    normalized: Dict[str, Any] = {}

    for header, raw_value in raw_row.items():
        field_name = mapping.get(header)
        if not field_name or field_name in normalized:
            continue
        value = _normalize_value(field_name, unwrap_cell_value(raw_value))
        if value is None:
            continue
        normalized[field_name] = value

    full_name = normalized.get("full_name")
    if full_name and "first_name" not in normalized and "last_name" not in normalized:
        normalized.update(split_full_name(full_name))

    return normalized


def validate_candidate(fields: Mapping[str, Any], *, require_contact: bool = True) -> Optional[str]:
    """Return a reason the normalized row cannot be stored, or None when it is acceptable."""
    if not fields:
        return "Row has no mapped values"
    if require_contact and not fields.get("email") and not fields.get("phone"):
        return "Row has no usable email or phone"
    return None
