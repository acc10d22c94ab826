"""
Page URL and content hashing.

The page URL hash is shared with the widget running in the browser, which computes
it with JavaScript string semantics. Both sides must produce identical output, so
the hash walks UTF-16 code units and wraps to a signed 32-bit integer on every step.
"""
from typing import Optional

BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def _utf16_code_units(text: str):
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def rolling_hash(text: str) -> str:
    """hash = hash * 31 + code_unit (int32), absolute value, base-36."""
    h = 0
    for unit in _utf16_code_units(text):
        h = _to_int32(h * 31 + unit)
    return _base36(abs(h))


def hash_page_url(page_url: str) -> str:
    """Stable key component for a page URL. Collisions are possible and accepted."""
    return rolling_hash(page_url)


def content_hash(content: Optional[str], sample_chars: int = 5000) -> str:
    """Hash of the first `sample_chars` characters, used to detect website content changes."""
    if not content:
        return ""
    return rolling_hash(content[:sample_chars])
