"""
Logging helpers.

Carrier error payloads echo back the addresses we sent; strip the PII
before it reaches log aggregation.
"""
import re

_PII_PATTERNS = [
    # Phone numbers
    (r'\+\d{1,3}[-.\s]?\d{1,4}[-.\s]?\d{1,4}[-.\s]?\d{1,9}\b', '[PHONE]'),
    (r'\b0\d{2,4}[-.\s]?\d{3,4}[-.\s]?\d{3,4}\b', '[PHONE]'),
    (r'\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b', '[PHONE]'),
    # Emails
    (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[EMAIL]'),
    # Postal codes
    (r'\b[A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2}\b', '[POSTAL]'),  # UK
    (r'\b\d{5}(?:-\d{4})?\b', '[ZIP]'),
    (r'\b[A-Z]\d[A-Z]\s*\d[A-Z]\d\b', '[POSTAL]'),  # Canada
]

# Keys whose values are never logged
_SECRET_KEYS = re.compile(r'(ShippoToken|Bearer)\s+[A-Za-z0-9_\-\.]+', re.IGNORECASE)


def sanitize_for_logging(text, max_length: int = 500) -> str:
    """
    Remove PII and credentials from text for safe logging.

    Args:
        text: Text (or anything str()-able) that may contain PII
        max_length: Maximum length of result

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = str(text)[:max_length]
    sanitized = _SECRET_KEYS.sub(r'\1 [REDACTED]', sanitized)

    for pattern, replacement in _PII_PATTERNS:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized
