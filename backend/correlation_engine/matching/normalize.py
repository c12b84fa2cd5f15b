"""Attribute conditioning applied before rules compare values."""

from __future__ import annotations

import json
import unicodedata
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal


def normalize_value(value: str, enabled: bool = True) -> str:
    """Unicode-normalize (NFKC), case-fold and trim a value when enabled.

    The transform is idempotent: ``normalize_value(normalize_value(x)) == normalize_value(x)``.
    """

    if not enabled:
        return value
    folded = unicodedata.normalize("NFKC", value).casefold()
    return unicodedata.normalize("NFKC", folded).strip()


def stringify_attribute(value: object) -> str | None:
    """Render a scalar attribute in the stable comparison format.

    ``None`` and blank strings are reported as missing (``None``). Booleans render
    as ``"true"``/``"false"``, numbers without trailing zeros, temporal values
    as ISO 8601 and containers as canonical JSON.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, Decimal):
        return _format_float(float(value)) if value.is_finite() else str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    text = str(value)
    return text if text.strip() else None


def attribute_values(attributes: Mapping[str, object], name: str) -> list[str]:
    """Return the comparable string values of one attribute.

    List-valued (multi-valued) attributes expand to one entry per non-blank item;
    an absent or blank attribute yields an empty list.
    """

    raw = attributes.get(name)
    items = raw if isinstance(raw, (list, tuple, set, frozenset)) else [raw]
    values: list[str] = []
    for item in items:
        rendered = stringify_attribute(item)
        if rendered is not None:
            values.append(rendered)
    if isinstance(raw, (set, frozenset)):
        values.sort()
    return values


def _format_float(value: float) -> str:
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    text = repr(value)
    if "e" in text or "E" in text or "." not in text:
        return text
    return text.rstrip("0").rstrip(".")
