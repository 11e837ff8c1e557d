"""
Professional license (cedula profesional) format rules

Mexican professional licenses issued by the SEP are 7 or 8 digit numbers.
People type them with spaces or hyphens ("1234-567", "12 345 678"), so the
number is normalized before the format check.

These functions are pure: no I/O, no configuration, no logging.
"""

import re
from typing import Optional

# ASCII digits only; \d would also accept other Unicode digit classes
LICENSE_PATTERN = re.compile(r'[0-9]{7,8}')

# Everything that is stripped during normalization
_SEPARATORS = re.compile(r'[\s\-]+')


def normalize_license(raw: Optional[str]) -> str:
    """Remove whitespace and hyphens from a license number.

    Total function: ``None`` and empty input give ``""``. Normalizing an
    already normalized value returns it unchanged.
    """
    if not raw:
        return ''
    return _SEPARATORS.sub('', str(raw))


def validate_format(normalized: str) -> bool:
    """True iff ``normalized`` is exactly 7 or 8 ASCII digits."""
    if not normalized:
        return False
    return LICENSE_PATTERN.fullmatch(normalized) is not None


def validate_license_format(raw: Optional[str]) -> bool:
    """Normalize then check the format of a raw license number."""
    if not raw:
        return False
    return validate_format(normalize_license(raw))
