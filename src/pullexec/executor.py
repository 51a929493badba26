"""Run the external program for one work item."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pullexec.config import PAYLOAD_ENV_VAR
from pullexec.errors import ExecutionError
from pullexec.models import ExecutionResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Program, payload, and how the payload reaches the program."""

    command: tuple[str, ...]
    payload: bytes
    pass_work_as_arg: bool = False
    pass_work_as_stdin: bool = False
    payload_file: Path | None = None
    keep_payload_file: bool = False
    host_env: bool = False
    extra_env: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None

    @property
    def exports_payload(self) -> bool:
        """The environment variable is the fallback when no other mode is chosen."""

        return self.payload_file is None and not self.pass_work_as_arg and not self.pass_work_as_stdin


class Executor(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the program and report its exit status."""


class ProcessExecutor:
    """Start the program as a child process; stdout and stderr are inherited."""

    def __init__(self, *, host_environment: Mapping[str, str] | None = None) -> None:
        self._host_environment = host_environment

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        if not request.command:
            return _echo_payload(request.payload)

        host = dict(os.environ if self._host_environment is None else self._host_environment)
        run_args = _build_run_args(request, host_path=host.get("PATH"))
        env = _build_env(request, host=host)

        payload_file = request.payload_file
        if payload_file is not None:
            try:
                payload_file.parent.mkdir(parents=True, exist_ok=True)
                payload_file.write_bytes(request.payload)
            except OSError as error:
                raise ExecutionError(
                    f"Cannot write payload file {payload_file}: {error}",
                    command_head=run_args[0],
                ) from error
        try:
            return _run_subprocess(
                run_args=run_args,
                env=env,
                stdin_payload=request.payload if request.pass_work_as_stdin else None,
                timeout_seconds=request.timeout_seconds,
            )
        finally:
            if payload_file is not None and not request.keep_payload_file:
                payload_file.unlink(missing_ok=True)


def _build_run_args(request: ExecutionRequest, *, host_path: str | None) -> list[str]:
    program, *args = request.command
    resolved = shutil.which(program, path=host_path) or program
    run_args = [resolved, *args]
    if request.pass_work_as_arg:
        run_args.append(request.payload.decode("utf-8", errors="replace"))
    return run_args


def _build_env(request: ExecutionRequest, *, host: Mapping[str, str]) -> dict[str, str]:
    env: dict[str, str] = dict(host) if request.host_env else {}
    env.update(request.extra_env)
    if request.exports_payload:
        env[PAYLOAD_ENV_VAR] = request.payload.decode("utf-8", errors="replace")
    return env


def _run_subprocess(
    *,
    run_args: Sequence[str],
    env: dict[str, str],
    stdin_payload: bytes | None,
    timeout_seconds: float | None,
) -> ExecutionResult:
    command_head = run_args[0]
    try:
        process = subprocess.Popen(  # noqa: S603
            list(run_args),
            env=env,
            stdin=subprocess.PIPE if stdin_payload is not None else subprocess.DEVNULL,
        )
    except FileNotFoundError as error:
        raise ExecutionError(f"Command not found: {command_head}", command_head=command_head) from error
    except OSError as error:
        raise ExecutionError(
            f"Command failed to start: {command_head}: {error}",
            command_head=command_head,
        ) from error

    logger.debug("Started %s (pid %s)", command_head, process.pid)
    try:
        process.communicate(input=stdin_payload, timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("%s exceeded %ss; terminating", command_head, timeout_seconds)
        _terminate_process(process)
        return ExecutionResult(exit_code=TIMEOUT_EXIT_CODE, timed_out=True)
    except BrokenPipeError:
        # Program exited without reading stdin.
        process.wait()
    return ExecutionResult(exit_code=process.returncode)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _echo_payload(payload: bytes) -> ExecutionResult:
    stream = getattr(sys.stdout, "buffer", None)
    if stream is not None:
        stream.write(payload)
        stream.flush()
    else:
        sys.stdout.write(payload.decode("utf-8", errors="replace"))
        sys.stdout.flush()
    return ExecutionResult(exit_code=0)
