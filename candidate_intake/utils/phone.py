"""
Phone number cleanup for candidate contact fields.

Numbers are reduced to their digits only; no country-code inference is done.
"""

import logging
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7


def digits_only_phone(value: Any, *, min_digits: int = MIN_PHONE_DIGITS) -> Optional[str]:
    """
    Strip every non-digit character from a phone value.

    Handles inputs such as:
    - (555) 123-4567
    - +91 98765-43210
    - 5551234567.0 (numeric spreadsheet cells)

    Args:
        value: Phone number in any format
        min_digits: Fewer remaining digits than this is treated as no phone

    Returns:
        The digit string, or None if empty or too short
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, float) and value.is_integer():
        text = str(int(value))
    else:
        text = str(value).strip()
    if not text:
        return None

    digits = re.sub(r"\D", "", text)
    if len(digits) < min_digits:
        if digits:
            logger.debug("Phone value %r has only %d digits; ignoring", value, len(digits))
        return None
    return digits
