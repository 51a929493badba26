"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from typing import Any

import pytest

from pullexec.config import RunSettings
from pullexec.errors import FetchError
from pullexec.executor import ExecutionRequest
from pullexec.models import ExecutionResult, WorkItem


class RecordingSource:
    """In-memory work source that records every lifecycle call."""

    name = "recording"

    def __init__(
        self,
        items: Iterable[WorkItem | None | Exception] = (),
        *,
        acknowledge_error: Exception | None = None,
        report_error: Exception | None = None,
    ) -> None:
        self._items = list(items)
        self.acknowledge_error = acknowledge_error
        self.report_error = report_error
        self.calls: list[tuple[str, Any]] = []

    def configure(self, environment: Mapping[str, str], flags: Mapping[str, Any]) -> None:
        self.calls.append(("configure", None))

    def connect(self) -> None:
        self.calls.append(("connect", None))

    def fetch(self) -> WorkItem | None:
        self.calls.append(("fetch", None))
        if not self._items:
            return None
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def acknowledge(self, item: WorkItem) -> None:
        self.calls.append(("acknowledge", item))
        if self.acknowledge_error is not None:
            raise self.acknowledge_error

    def report_failure(self, item: WorkItem) -> None:
        self.calls.append(("report_failure", item))
        if self.report_error is not None:
            raise self.report_error

    def release(self) -> None:
        self.calls.append(("release", None))

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class ScriptedExecutor:
    """Executor returning pre-set exit codes without starting processes."""

    def __init__(self, exit_codes: Iterable[int | Exception] = (0,)) -> None:
        self._exit_codes = list(exit_codes)
        self.requests: list[ExecutionRequest] = []

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        outcome = self._exit_codes.pop(0) if self._exit_codes else 0
        if isinstance(outcome, Exception):
            raise outcome
        return ExecutionResult(exit_code=outcome)


@pytest.fixture()
def run_settings() -> RunSettings:
    return RunSettings(driver="recording")


@pytest.fixture()
def fetch_error() -> FetchError:
    return FetchError("backend unavailable")


@pytest.fixture()
def python_program() -> tuple[str, ...]:
    """Command prefix that runs an inline Python snippet."""

    return (sys.executable, "-c")
