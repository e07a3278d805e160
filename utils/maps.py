"""
Google Maps link parsing for location nodes.

Flow authors usually paste a maps URL instead of typing coordinates. These are
the URL shapes the authoring tool produces:
  https://www.google.com/maps/place/Name/@13.7563,100.5018,17z
  https://www.google.com/maps?q=13.7563,100.5018
  https://maps.google.com/maps?ll=13.7563,100.5018
  https://www.google.com/maps/place/.../data=!3d13.7563!4d100.5018
Short links (maps.app.goo.gl) carry no coordinates and are rejected.
"""
from __future__ import annotations

import re
from typing import Optional

_NUM = r"(-?\d+\.?\d*)"

_PATTERNS = [
    re.compile(rf"@{_NUM},{_NUM}"),
    re.compile(rf"[?&]q={_NUM},{_NUM}"),
    re.compile(rf"[?&]ll={_NUM},{_NUM}"),
    re.compile(rf"!3d{_NUM}!4d{_NUM}"),
    re.compile(r"(-?\d{1,3}\.\d{3,}),\s*(-?\d{1,3}\.\d{3,})"),
]

SHORT_LINK_HOSTS = ("goo.gl", "maps.app")


def is_short_link(url: str) -> bool:
    return any(host in url for host in SHORT_LINK_HOSTS)


def parse_maps_link(url: str) -> Optional[tuple[float, float]]:
    """Return (latitude, longitude) from a maps URL, or None if none is present."""
    if not url or not url.strip():
        return None
    for pattern in _PATTERNS:
        match = pattern.search(url)
        if match:
            lat, lng = float(match.group(1)), float(match.group(2))
            if -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0:
                return lat, lng
    return None


def maps_url_for(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}"
