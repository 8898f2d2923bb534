"""Type coercion of extracted values against the template schema."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

_NUMBER_CLEANUP = re.compile(r"[^\d,.\-]")


def _to_decimal(v: Any) -> Decimal | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float, Decimal)):
        return Decimal(str(v))
    text = _NUMBER_CLEANUP.sub("", str(v))
    if not text:
        return None
    # "1.234,56" / "1,234.56": the right-most separator is the decimal one
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        text = f"{head.replace(',', '')}.{tail}" if len(tail) != 3 else text.replace(",", "")
    try:
        return Decimal(text)
    except (InvalidOperation, ValueError):
        return None


def _schema_types(schema: dict[str, Any]) -> set[str]:
    t = schema.get("type")
    if isinstance(t, list):
        return set(t)
    return {t} if t else set()


def normalize_value(value: Any, schema: dict[str, Any]) -> Any:
    types = _schema_types(schema)
    if value is None:
        return None
    if isinstance(value, str) and "string" not in types:
        value = value.strip()
        if value == "" and "null" in types:
            return None
    if types & {"number", "integer"} and isinstance(value, str):
        dec = _to_decimal(value)
        if dec is None:
            return value
        if "integer" in types and dec == dec.to_integral_value():
            return int(dec)
        return float(dec)
    if "object" in types and isinstance(value, dict):
        props = schema.get("properties") or {}
        return {k: normalize_value(v, props.get(k, {})) for k, v in value.items()}
    if "array" in types and isinstance(value, list):
        item_schema = schema.get("items") or {}
        return [normalize_value(v, item_schema) for v in value]
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_extraction(data: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    normalized = normalize_value(data, {**schema, "type": schema.get("type", "object")})
    return normalized if isinstance(normalized, dict) else data
