"""Controller behind the pullexec CLI command."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pullexec.config import RunSettings
from pullexec.errors import ConfigurationError, SourceConnectionError
from pullexec.executor import Executor, ProcessExecutor
from pullexec.models import IterationOutcome
from pullexec.sources import available_sources, get_source
from pullexec.sources.base import WorkSource
from pullexec.worker import PullWorker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass(slots=True)
class PullCommand:
    """CLI input for one pullexec run."""

    program: tuple[str, ...]
    flags: dict[str, Any]
    environment: Mapping[str, str] | None = None


@dataclass(slots=True)
class PullRunResult:
    """Summary lines to render plus the process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


class PullCliController:
    """Builds the worker from CLI input and maps outcomes to exit codes."""

    def __init__(self, *, executor: Executor | None = None) -> None:
        self._executor = executor

    def list_drivers(self) -> list[str]:
        return available_sources()

    def run(self, command: PullCommand, *, source: WorkSource | None = None) -> PullRunResult:
        environment = dict(os.environ if command.environment is None else command.environment)
        try:
            settings = RunSettings.from_sources(environment, command.flags)
            work_source = source or get_source(settings.driver, strict_templates=settings.strict_templates)
        except ConfigurationError as error:
            return PullRunResult(lines=[f"Configuration error: {error}"], exit_code=EXIT_FAILURE)

        worker = PullWorker(
            source=work_source,
            executor=self._executor or ProcessExecutor(host_environment=environment),
            command=command.program,
            settings=settings,
            environment=environment,
            flags=command.flags,
        )
        try:
            worker.start()
            if settings.daemon:
                return self._run_daemon(worker, settings)
            return self._run_single(worker, settings)
        except ConfigurationError as error:
            return PullRunResult(
                lines=[f"Configuration error: {error}"],
                exit_code=EXIT_FAILURE,
            )
        except SourceConnectionError as error:
            return PullRunResult(
                lines=[f"Connection error: {error}"],
                exit_code=EXIT_FAILURE,
            )
        finally:
            worker.stop()

    def _run_single(self, worker: PullWorker, settings: RunSettings) -> PullRunResult:
        result = worker.run_once()
        line = f"Run result: driver={settings.driver} outcome={result.outcome.value}"
        if result.execution is not None:
            line += f" exit_code={result.execution.exit_code}"
        lines = [line]
        if result.error:
            lines.append(f"Error: {result.error}")
        success = result.outcome in {IterationOutcome.SUCCEEDED, IterationOutcome.NO_WORK}
        return PullRunResult(
            lines=lines,
            exit_code=EXIT_OK if success else EXIT_FAILURE,
        )

    def _run_daemon(self, worker: PullWorker, settings: RunSettings) -> PullRunResult:
        summary = worker.run_loop(max_iterations=settings.max_iterations)
        return PullRunResult(
            lines=[
                "Daemon summary: "
                f"driver={settings.driver} iterations={summary.iterations} "
                f"succeeded={summary.succeeded} failed={summary.failed} "
                f"no_work={summary.no_work} fetch_errors={summary.fetch_errors}",
            ],
            exit_code=EXIT_OK,
        )
