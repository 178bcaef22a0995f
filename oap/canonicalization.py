"""
OAP Canonical JSON (JCS)

Deterministic byte serialization used before every hash and signature.
Two semantically equal values (attribute order irrelevant) produce
byte-identical output in every conforming implementation.

Rules:
- Object keys sorted by Unicode code point (same as UTF-8 byte order)
- No whitespace between tokens
- UTF-8 encoding, no BOM
- Strings escape only '"', '\\' and control characters
- Integers as plain decimal digits
- Floats as ECMAScript Number.prototype.toString (RFC 8785 section 3.2.2.3)
- Arrays preserve order
"""

import json
import math
from typing import Any, Dict, List, Union

from .errors import CanonicalizationFailure


def canonicalize(obj: Any) -> bytes:
    """
    Convert a JSON-representable value to canonical bytes.

    Raises:
        CanonicalizationFailure: NaN/Infinity, non-string keys or
            unsupported types anywhere in the value.
    """
    text = _canonicalize_value(obj, "$")
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise CanonicalizationFailure(f"string is not valid Unicode ({e.reason})") from None


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return _canonicalize_value(obj, "$")


def format_number(value: Union[int, float]) -> str:
    """
    Render a number the way every OAP implementation must.

    >>> format_number(5000.0)
    '5000'
    >>> format_number(0.1)
    '0.1'
    >>> format_number(1e21)
    '1e+21'
    """
    if isinstance(value, bool):
        raise CanonicalizationFailure("booleans are not numbers")
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        raise CanonicalizationFailure(f"non-finite number {value!r}")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    digits, n = _shortest_digits(abs(value))
    k = len(digits)

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * (-n) + digits

    exponent = n - 1
    exp_str = ("+" if exponent >= 0 else "-") + str(abs(exponent))
    if k == 1:
        return sign + digits + "e" + exp_str
    return sign + digits[0] + "." + digits[1:] + "e" + exp_str


def _shortest_digits(value: float):
    """
    Split a positive float into (digits, n) with value == 0.digits * 10**n.

    repr() yields the shortest string that round-trips, which is the
    digit selection ECMAScript mandates.
    """
    text = repr(value)
    if "e" in text:
        mantissa, exp = text.split("e")
        exp = int(exp)
    else:
        mantissa, exp = text, 0

    if "." in mantissa:
        int_part, frac_part = mantissa.split(".")
    else:
        int_part, frac_part = mantissa, ""

    if frac_part == "0":
        frac_part = ""

    all_digits = int_part + frac_part
    point = len(int_part) + exp

    stripped = all_digits.lstrip("0")
    point -= len(all_digits) - len(stripped)
    stripped = stripped.rstrip("0") or "0"
    return stripped, point


def _canonicalize_value(value: Any, path: str) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        try:
            return format_number(value)
        except CanonicalizationFailure as e:
            raise CanonicalizationFailure(str(e).split(": ", 1)[-1], path) from None
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, dict):
        return _canonicalize_object(value, path)
    if isinstance(value, (list, tuple)):
        return _canonicalize_array(value, path)
    raise CanonicalizationFailure(f"cannot canonicalize type {type(value).__name__}", path)


def _canonicalize_object(obj: Dict[str, Any], path: str) -> str:
    for key in obj:
        if not isinstance(key, str):
            raise CanonicalizationFailure(f"object key {key!r} is not a string", path)

    pairs = []
    for key in sorted(obj.keys()):
        rendered = _canonicalize_value(obj[key], f"{path}.{key}")
        pairs.append(json.dumps(key, ensure_ascii=False) + ":" + rendered)
    return "{" + ",".join(pairs) + "}"


def _canonicalize_array(arr: Union[List, tuple], path: str) -> str:
    items = [_canonicalize_value(item, f"{path}[{i}]") for i, item in enumerate(arr)]
    return "[" + ",".join(items) + "]"
