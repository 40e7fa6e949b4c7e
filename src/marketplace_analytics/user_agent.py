"""
Marketplace Analytics - User-Agent Parsing.

Buckets a raw user-agent header into device type, operating system, browser
and device model. Order matters in every table below: the first matching
pattern wins.
"""
from __future__ import annotations

import re

from .models import DeviceInfo, DeviceType

_TABLET = re.compile(r"iPad|Tablet|PlayBook|Silk|Kindle|Nexus (7|9|10)\b|SM-T\d+", re.IGNORECASE)
_MOBILE = re.compile(r"Mobi|iPhone|iPod|Android.*Mobile|Windows Phone|BlackBerry|Opera Mini", re.IGNORECASE)
# Android without "Mobile" is a tablet by convention.
_ANDROID_TABLET = re.compile(r"Android(?!.*Mobile)", re.IGNORECASE)

_BROWSERS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/")),
    ("Opera", re.compile(r"OPR/|Opera")),
    ("Samsung Internet", re.compile(r"SamsungBrowser/")),
    ("Firefox", re.compile(r"Firefox/|FxiOS/")),
    ("Chrome", re.compile(r"Chrome/|CriOS/")),
    ("Safari", re.compile(r"Safari/")),
    ("Internet Explorer", re.compile(r"MSIE |Trident/")),
)

_OPERATING_SYSTEMS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Windows", re.compile(r"Windows")),
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("Android", re.compile(r"Android")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("Chrome OS", re.compile(r"CrOS")),
    ("Linux", re.compile(r"Linux")),
)

_MODELS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("iPhone", re.compile(r"iPhone")),
    ("iPad", re.compile(r"iPad")),
    ("iPod", re.compile(r"iPod")),
)
_ANDROID_MODEL = re.compile(r"Android [\d.]+; (?:[a-z]{2}-[a-z]{2}; )?([^;)]+?)(?: Build/|\))", re.IGNORECASE)

UNKNOWN = "Unknown"


def detect_device_type(user_agent: str) -> DeviceType:
    """Classify as mobile, tablet or desktop; anything unrecognised is desktop."""
    if _TABLET.search(user_agent) or _ANDROID_TABLET.search(user_agent):
        return DeviceType.TABLET
    if _MOBILE.search(user_agent):
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


def _first_match(user_agent: str, table: tuple[tuple[str, re.Pattern[str]], ...]) -> str:
    for name, pattern in table:
        if pattern.search(user_agent):
            return name
    return UNKNOWN


def detect_model(user_agent: str) -> str:
    model = _first_match(user_agent, _MODELS)
    if model != UNKNOWN:
        return model
    match = _ANDROID_MODEL.search(user_agent)
    if match and match.group(1).strip() not in ("K", "U"):
        return match.group(1).strip()
    return UNKNOWN


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    """Parse a user-agent header into :class:`DeviceInfo`."""
    if not user_agent:
        return DeviceInfo()
    return DeviceInfo(
        type=detect_device_type(user_agent),
        os=_first_match(user_agent, _OPERATING_SYSTEMS),
        browser=_first_match(user_agent, _BROWSERS),
        model=detect_model(user_agent),
    )
