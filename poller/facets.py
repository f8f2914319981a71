"""Facet encoding and value coercion for query result series."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from core.config import base_name
from poller.errors import ValueParseError

METRIC_PREFIX = "query_result_"

Facet = dict[str, str]


def metric_name(query_name: str, suffix: str = "") -> str:
    """Exported metric name, e.g. ``query_result_orders_open``."""
    return METRIC_PREFIX + base_name(query_name, suffix)


def render_label_value(value: Any) -> str:
    """Render a column value as a lower-cased label value."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def encode_facet(facet: Mapping[str, str]) -> str:
    """Canonical, insertion-order independent encoding of a facet."""
    return json.dumps(dict(facet), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def series_key(query_name: str, suffix: str, facet: Mapping[str, str]) -> str:
    """Key identifying one series of a query."""
    return base_name(query_name, suffix) + encode_facet(facet)


def coerce_value(value: Any) -> float:
    """Convert a value column to a float.

    Strings are parsed as decimal numbers; ints and floats pass through.

    Raises:
        ValueParseError: If the string is not a number or the type is unsupported
    """
    if isinstance(value, bool):
        raise ValueParseError(f"Unhandled value type bool: {value!r}")
    if isinstance(value, str):
        # float() also accepts padding and digit separators; result values may not.
        if value != value.strip() or "_" in value:
            raise ValueParseError(f"Cannot parse {value!r} as a number")
        try:
            return float(value)
        except ValueError:
            raise ValueParseError(f"Cannot parse {value!r} as a number") from None
    if isinstance(value, int | float):
        try:
            return float(value)
        except OverflowError:
            raise ValueParseError(f"Value {value} does not fit in a float") from None
    raise ValueParseError(f"Unhandled value type {type(value).__name__}: {value!r}")
