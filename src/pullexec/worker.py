"""Lifecycle controller: fetch one item, run the program, report the outcome."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pullexec.config import RunSettings
from pullexec.errors import ExecutionError, FetchError
from pullexec.executor import ExecutionRequest, Executor
from pullexec.models import ExecutionResult, IterationOutcome, WorkItem
from pullexec.sources.base import WorkSource

logger = logging.getLogger(__name__)

START_FAILURE_EXIT_CODE = 127


@dataclass(frozen=True, slots=True)
class IterationResult:
    """What happened during one fetch → execute → acknowledge/fail pass."""

    outcome: IterationOutcome
    item: WorkItem | None = None
    execution: ExecutionResult | None = None
    error: str | None = None


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    iterations: int = 0
    succeeded: int = 0
    failed: int = 0
    no_work: int = 0
    fetch_errors: int = 0

    def add(self, result: IterationResult) -> None:
        self.iterations += 1
        if result.outcome is IterationOutcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome is IterationOutcome.FAILED:
            self.failed += 1
        elif result.outcome is IterationOutcome.NO_WORK:
            self.no_work += 1
        else:
            self.fetch_errors += 1


class PullWorker:
    """Drives one work source through its lifecycle.

    Call :meth:`start` once (configure, then connect), then :meth:`run_once`
    or :meth:`run_loop`, and :meth:`stop` once at shutdown. For every fetched
    item exactly one of ``acknowledge`` and ``report_failure`` is called, and
    their errors are logged, never raised.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        source: WorkSource,
        executor: Executor,
        command: Sequence[str],
        settings: RunSettings,
        environment: Mapping[str, str] | None = None,
        flags: Mapping[str, Any] | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        self.source = source
        self.executor = executor
        self.command = tuple(command)
        self.settings = settings
        self.environment = dict(environment or {})
        self.flags = dict(flags or {})
        self.extra_env = dict(extra_env or {})
        self.interval_seconds = settings.daemon_interval_seconds
        self._started = False
        self._stopped = False
        self._stop_requested = False

    def start(self) -> None:
        """Configure and connect the source; errors here are fatal."""

        if self._started:
            return
        self.source.configure(self.environment, self.flags)
        self.source.connect()
        self._started = True
        logger.info("Connected to %s source", self.source.name)

    def stop(self) -> None:
        """Release the source exactly once."""

        if self._stopped:
            return
        self._stopped = True
        try:
            self.source.release()
        except Exception:  # noqa: BLE001
            logger.exception("Releasing %s source failed", self.source.name)

    def request_stop(self) -> None:
        """Finish the current iteration and leave :meth:`run_loop`."""

        self._stop_requested = True

    def run_once(self) -> IterationResult:
        """Fetch at most one item and process it."""

        try:
            item = self.source.fetch()
        except FetchError as error:
            logger.error("Fetching work failed: %s", error)
            return IterationResult(outcome=IterationOutcome.FETCH_ERROR, error=str(error))
        if item is None:
            logger.debug("No work available")
            return IterationResult(outcome=IterationOutcome.NO_WORK)

        logger.info("Fetched work item (%d bytes)", len(item.payload))
        error_summary: str | None = None
        try:
            execution = self.executor.execute(self._build_request(item))
        except ExecutionError as error:
            logger.error("%s", error)
            error_summary = str(error)
            execution = ExecutionResult(exit_code=START_FAILURE_EXIT_CODE)

        if execution.succeeded:
            logger.info("Program succeeded")
            self._acknowledge(item)
            return IterationResult(outcome=IterationOutcome.SUCCEEDED, item=item, execution=execution)

        if execution.timed_out:
            logger.warning("Program timed out after %ss", self.settings.timeout_seconds)
        else:
            logger.warning("Program exited with status %s", execution.exit_code)
        self._report_failure(item)
        return IterationResult(
            outcome=IterationOutcome.FAILED,
            item=item,
            execution=execution,
            error=error_summary,
        )

    def run_loop(self, *, max_iterations: int | None = None) -> WorkerRunSummary:
        """Process items until stopped or ``max_iterations`` is reached.

        No work, failures, and fetch errors all continue the loop; only
        errors outside the iteration contract propagate.
        """

        summary = WorkerRunSummary()
        while not self._stop_requested:
            if max_iterations is not None and summary.iterations >= max_iterations:
                break
            summary.add(self.run_once())
            if max_iterations is not None and summary.iterations >= max_iterations:
                break
            if self.interval_seconds > 0:
                self._sleep_with_stop(self.interval_seconds)
        return summary

    def _build_request(self, item: WorkItem) -> ExecutionRequest:
        settings = self.settings
        return ExecutionRequest(
            command=self.command,
            payload=item.payload,
            pass_work_as_arg=settings.pass_work_as_arg,
            pass_work_as_stdin=settings.pass_work_as_stdin,
            payload_file=settings.payload_file,
            keep_payload_file=settings.keep_payload_file,
            host_env=settings.host_env,
            extra_env=self.extra_env,
            timeout_seconds=settings.timeout_seconds,
        )

    def _acknowledge(self, item: WorkItem) -> None:
        try:
            self.source.acknowledge(item)
        except Exception:  # noqa: BLE001
            logger.exception("Acknowledging work item failed")

    def _report_failure(self, item: WorkItem) -> None:
        try:
            self.source.report_failure(item)
        except Exception:  # noqa: BLE001
            logger.exception("Reporting work item failure failed")

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))
