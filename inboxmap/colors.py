"""
Color helpers - deterministic fallback colors and contrast math
"""

import re
from typing import Dict, Iterable, Optional

from inboxmap.models import DEFAULT_COLOR, DomainColorInfo


def luminance(r: int, g: int, b: int) -> float:
    """Relative luminance of an RGB color (WCAG formula)"""
    def channel(c: int) -> float:
        c = c / 255
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    return 0.2126 * channel(r) + 0.7152 * channel(g) + 0.0722 * channel(b)


def _parse_hex(hex_color: str):
    return int(hex_color[1:3], 16), int(hex_color[3:5], 16), int(hex_color[5:7], 16)


def rgb_to_hex(r: int, g: int, b: int) -> str:
    return f"#{r:02x}{g:02x}{b:02x}"


def contrast_text_color(hex_color: str) -> str:
    """Black or white, whichever reads better on the given background"""
    return "#000000" if luminance(*_parse_hex(hex_color)) > 0.179 else "#ffffff"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def hash_color(text: str) -> str:
    """
    Stable HSL color for a string.

    Rolling hash h = code + (h << 5) - h, with the shift wrapped to a signed
    32-bit int.
    """
    h = 0
    for ch in text:
        h = ord(ch) + (_to_int32(_to_int32(h) << 5) - h)
    return f"hsl({abs(h) % 360}, 55%, 45%)"


def hsl_to_hex(hsl: str) -> str:
    match = re.match(r'hsl\((\d+),\s*(\d+)%,\s*(\d+)%\)', hsl)
    if not match:
        return DEFAULT_COLOR

    h, s, l = (int(v) for v in match.groups())
    s /= 100
    l /= 100
    a = s * min(l, 1 - l)

    def f(n: int) -> int:
        k = (n + h / 30) % 12
        return round((l - a * max(-1, min(k - 3, 9 - k, 1))) * 255)

    return rgb_to_hex(f(0), f(8), f(4))


def fallback_color(domain_id: str) -> DomainColorInfo:
    return DomainColorInfo(color=hsl_to_hex(hash_color(domain_id)), favicon_url=None)


def seed_fallback_colors(
    domain_ids: Iterable[str],
    existing: Optional[Dict[str, DomainColorInfo]] = None
) -> Dict[str, DomainColorInfo]:
    """Return a new color map covering every domain, keeping known entries"""
    colors = dict(existing or {})
    for domain_id in domain_ids:
        if domain_id not in colors:
            colors[domain_id] = fallback_color(domain_id)
    return colors
