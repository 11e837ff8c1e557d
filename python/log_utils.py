"""
Shared logging helpers for the emergency access service

Anything that originates from an anonymous caller (QR tokens, accessor
names, license numbers) passes through these helpers before it reaches a
log line.
"""

import re
from typing import Optional


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def mask_token(token: Optional[str], visible: int = 8) -> str:
    """Show only the first characters of a secret-ish token.

    QR tokens are bearer credentials for a patient's emergency data, so the
    full value never goes to the logs.
    """
    if not token:
        return ''
    cleaned = sanitize_for_logging(token)
    if len(cleaned) <= visible:
        return cleaned[:2] + '...'
    return cleaned[:visible] + '...'
