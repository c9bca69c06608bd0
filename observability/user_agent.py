"""
User-Agent Classification

Coarse device / OS / browser classification by ordered pattern matching.
Device class is decided first (mobile, then tablet, else desktop); OS and
browser are matched independently of the device class.
"""

import re
from typing import Any, Dict, Optional

_MOBILE_RE = re.compile(r"mobile|android|iphone|ipod|blackberry|iemobile|opera mini")
_TABLET_RE = re.compile(r"tablet|ipad|playbook|silk")


def _search(pattern: str, text: str) -> Optional[str]:
    match = re.search(pattern, text)
    return match.group(1) if match else None


def _dotted(version: Optional[str]) -> Optional[str]:
    return version.replace("_", ".") if version else None


def classify_user_agent(user_agent: Optional[str]) -> Dict[str, Any]:
    """
    Classify a user-agent string.

    Returns a mapping with `type`, `os` and `browser` always present
    ("Unknown" when unmatched) and `brand`, `model`, `osVersion`,
    `browserVersion` only when detected.
    """
    ua = (user_agent or "").lower()

    device_type = "desktop"
    brand: Optional[str] = None
    model: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    browser: Optional[str] = None
    browser_version: Optional[str] = None

    # iPad agents carry a "Mobile/" token but are tablets.
    if _MOBILE_RE.search(ua) and "ipad" not in ua:
        device_type = "mobile"
        if "iphone" in ua:
            brand, model = "Apple", "iPhone"
            os_version = _dotted(_search(r"iphone os (\d+[_\d]*)", ua))
        elif "ipod" in ua:
            brand, model = "Apple", "iPod"
        elif "android" in ua:
            brand = "Android"
            os_version = _search(r"android (\d+\.?\d*)", ua)
            device_match = _search(r"; ([^;)]+)\)", ua)
            if device_match:
                model = device_match.strip()
        elif "blackberry" in ua:
            brand = "BlackBerry"
    elif _TABLET_RE.search(ua):
        device_type = "tablet"
        if "ipad" in ua:
            brand, model = "Apple", "iPad"
            os_version = _dotted(_search(r"os (\d+[_\d]*)", ua))
        elif "android" in ua:
            brand, model = "Android", "Android Tablet"

    # Android and iOS agents also mention Linux / Mac OS X, so they go first.
    if "windows" in ua:
        os_name = "Windows"
        nt = _search(r"windows nt (\d+\.\d+)", ua)
        if nt:
            os_version = "10/11" if nt == "10.0" else nt
    elif "android" in ua:
        os_name = "Android"
        os_version = _search(r"android (\d+\.?\d*)", ua) or os_version
    elif re.search(r"iphone|ipad|ipod", ua):
        os_name = "iOS"
        os_version = _dotted(_search(r"(?:iphone|ipad|ipod).*?os (\d+[_\d]*)", ua)) or os_version
    elif re.search(r"macintosh|mac os x", ua):
        os_name = "macOS"
        os_version = _dotted(_search(r"mac os x (\d+[._]\d+)", ua))
    elif "linux" in ua:
        os_name = "Linux"

    if "chrome" in ua and not re.search(r"edg|opr", ua):
        browser = "Chrome"
        browser_version = _search(r"chrome/(\d+\.\d+)", ua)
    elif "firefox" in ua:
        browser = "Firefox"
        browser_version = _search(r"firefox/(\d+\.\d+)", ua)
    elif "safari" in ua and "chrome" not in ua:
        browser = "Safari"
        browser_version = _search(r"version/(\d+\.\d+)", ua)
    elif "edg" in ua:
        browser = "Edge"
        browser_version = _search(r"edg/(\d+\.\d+)", ua)
    elif "opr" in ua:
        browser = "Opera"
        browser_version = _search(r"opr/(\d+\.\d+)", ua)

    device: Dict[str, Any] = {"type": device_type}
    if brand:
        device["brand"] = brand
    if model:
        device["model"] = model
    device["os"] = os_name or "Unknown"
    if os_version:
        device["osVersion"] = os_version
    device["browser"] = browser or "Unknown"
    if browser_version:
        device["browserVersion"] = browser_version
    return device
