"""Shared validation utilities"""

import re
import uuid
from typing import Optional
from urllib.parse import urlsplit

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def validate_uuid(value: str) -> bool:
    """Validate UUID format"""
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError, TypeError):
        return False


def is_safe_relative_redirect(url: Optional[str]) -> bool:
    """
    True if url is a path on our own site.

    Rejects absolute URLs, scheme-relative URLs (//evil.com) and backslashes,
    which some browsers normalise into a host.
    """
    if not url or not url.startswith("/"):
        return False
    if url.startswith("//") or "\\" in url or "://" in url:
        return False
    parts = urlsplit(url)
    return not parts.scheme and not parts.netloc


def append_query_param(url: str, key: str, value: str) -> str:
    """Add key=value to the query string, keeping any #fragment at the end"""
    base, hash_mark, fragment = url.partition("#")
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{key}={value}{hash_mark}{fragment}"


def validate_iso_date(value: Optional[str]) -> Optional[str]:
    """
    Validate a YYYY-MM-DD date string.

    Raises:
        ValueError: If the value is not in YYYY-MM-DD format
    """
    if value is None:
        return value
    if not DATE_PATTERN.match(value):
        raise ValueError("Date must be in YYYY-MM-DD format")
    return value
