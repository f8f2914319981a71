from __future__ import annotations

import json
import time
from typing import Any

from core.config import Query


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"[]", reason: str = "OK") -> None:
        self.status = status
        self.reason = reason
        self._body = body

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class _FailingRequest:
    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    async def __aenter__(self) -> FakeResponse:
        raise self._exc

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Replays scripted responses or errors for ``post`` calls.

    Once the script is exhausted every call gets ``default``.
    """

    def __init__(
        self,
        outcomes: list[FakeResponse | BaseException] | None = None,
        default: FakeResponse | BaseException | None = None,
    ) -> None:
        self._outcomes = list(outcomes or [])
        self._default = default if default is not None else rows()
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def post(
        self,
        url: str,
        *,
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: Any = None,
    ) -> FakeResponse | _FailingRequest:
        self.calls.append(
            {
                "url": url,
                "data": data,
                "headers": headers,
                "timeout": timeout,
                "at": time.monotonic(),
            }
        )
        outcome = self._outcomes.pop(0) if self._outcomes else self._default
        if isinstance(outcome, BaseException):
            return _FailingRequest(outcome)
        return outcome

    async def close(self) -> None:
        self.closed = True


def rows(*records: dict[str, Any]) -> FakeResponse:
    return FakeResponse(200, json.dumps(list(records)).encode("utf-8"))


def make_query(**overrides: Any) -> Query:
    fields: dict[str, Any] = {
        "name": "test_query",
        "driver": "postgresql",
        "connection": {"host": "db"},
        "sql": "SELECT 1",
        "interval": 60.0,
        "timeout": 5.0,
    }
    fields.update(overrides)
    return Query.model_validate(fields)
