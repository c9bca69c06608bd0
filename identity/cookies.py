"""
Identity Cookie Helpers

Parse and serialize the durable anonymous-identity cookie.

DESIGN RULES:
- Pure string functions, no framework objects
- One cookie, fixed attributes
"""

from typing import Optional
from urllib.parse import quote, unquote

COOKIE_MAX_AGE_SECONDS = 60 * 60 * 24 * 30  # 30 days


def get_cookie_value(cookie_header: Optional[str], name: str) -> Optional[str]:
    """
    Return the value of cookie `name` from a raw Cookie header, or None.

    Entries without '=' are skipped. Values are URL-decoded.
    """
    if not cookie_header:
        return None

    for cookie in cookie_header.split(";"):
        raw_name, sep, raw_value = cookie.partition("=")
        if not raw_name or not sep:
            continue
        if raw_name.strip() == name:
            return unquote(raw_value.strip())
    return None


def serialize_identity_cookie(name: str, value: str, secure: bool = False) -> str:
    """Build the Set-Cookie directive for a freshly minted identity."""
    attributes = [
        f"{name}={quote(value, safe='')}",
        "Path=/",
        f"Max-Age={COOKIE_MAX_AGE_SECONDS}",
        "HttpOnly",
        "SameSite=Lax",
    ]
    if secure:
        attributes.append("Secure")
    return "; ".join(attributes)
