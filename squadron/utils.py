import re
from typing import Any, Optional

HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
FORMULA_PREFIX_RE = re.compile(r"^[=+\-@\t\r]+")


def strip_or_none(x: Any) -> Optional[str]:
    if x is None:
        return None
    s = str(x).strip()
    return s if s else None


def to_int_or_none(x):
    if x is None or x == "":
        return None
    try:
        return int(x)
    except (TypeError, ValueError):
        return None


def is_hex_color(value: Any) -> bool:
    return isinstance(value, str) and bool(HEX_COLOR_RE.match(value))


def csv_safe(value: Any) -> str:
    # Spreadsheet apps evaluate cells starting with these characters
    if value is None:
        return ""
    return FORMULA_PREFIX_RE.sub("", str(value))
