"""Input validation utilities for audit requests."""

import re
from typing import Any
from urllib.parse import urlparse

_CLINIC_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


def validate_url(url: Any) -> tuple[bool, str]:
    """Validate an absolute http(s) page URL.

    Args:
        url: The URL to validate.

    Returns:
        Tuple of (is_valid, error_message).  error_message is empty on success.
    """
    if not url or not isinstance(url, str):
        return False, "URL is empty or not a string."
    url = url.strip()
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        return False, f"URL parse error: {exc}"
    if parsed.scheme not in ("http", "https"):
        return False, f"Invalid scheme: {parsed.scheme!r}. Must be http or https."
    if not parsed.netloc:
        return False, "URL has no network location (domain)."
    hostname = parsed.hostname or ""
    if not hostname or len(hostname) > 253:
        return False, "Invalid hostname length."
    return True, ""


def validate_clinic_id(clinic_id: Any) -> tuple[bool, str]:
    """Validate a clinic identifier.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not clinic_id or not isinstance(clinic_id, str) or not clinic_id.strip():
        return False, "Clinic id is empty or not a string."
    if not _CLINIC_ID_RE.match(clinic_id.strip()):
        return False, f"Clinic id {clinic_id!r} contains invalid characters."
    return True, ""
