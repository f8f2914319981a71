"""Row types shared by the fetch client and the metric reconciliation."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

Record = Mapping[str, Any]
RecordSet = list[Record]


class RecordDecodeError(ValueError):
    """Query service answered with a body that is not a list of rows."""


def decode_records(raw: bytes | str) -> RecordSet:
    """Decode a query-service response body into a record set.

    The body must be a JSON array of objects; ``null`` is treated as an
    empty result.

    Raises:
        RecordDecodeError: If the body is not valid JSON or has the wrong shape
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise RecordDecodeError(f"Invalid JSON in query response: {exc}") from exc

    if payload is None:
        return []
    if not isinstance(payload, list):
        raise RecordDecodeError(
            f"Expected a JSON array of rows, got {type(payload).__name__}"
        )

    records: RecordSet = []
    for index, row in enumerate(payload):
        if not isinstance(row, dict):
            raise RecordDecodeError(
                f"Row {index} is not a JSON object (got {type(row).__name__})"
            )
        records.append(row)
    return records
