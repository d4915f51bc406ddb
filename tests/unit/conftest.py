# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
from typing import Any, Awaitable, Callable

import pytest

from observability import logger


class LogCapture:
    """Collects JSONL records written through observability.logger."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def write(self, line: str) -> None:
        self.records.append(json.loads(line))

    def of(self, event_type: str) -> list[dict[str, Any]]:
        return [r for r in self.records if r.get("event_type") == event_type]

    def types(self) -> list[str]:
        return [r.get("event_type", "") for r in self.records]

    def where(self, predicate: Callable[[dict[str, Any]], bool]) -> list[dict[str, Any]]:
        return [r for r in self.records if predicate(r)]


@pytest.fixture
def logs(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    capture = LogCapture()
    monkeypatch.setattr(logger, "_print", capture.write)
    monkeypatch.setattr(logger, "_enabled", True)
    return capture


async def _wait_until(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """await eventually(lambda: cond) polls the loop until cond holds."""
    return _wait_until
