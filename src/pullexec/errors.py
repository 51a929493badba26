"""Error taxonomy shared by sources, the worker, and the CLI."""

from __future__ import annotations


class PullexecError(Exception):
    """Base class for all pullexec errors."""


class ConfigurationError(PullexecError):
    """Required settings are missing or malformed."""


class SourceConnectionError(PullexecError, ConnectionError):
    """Backend is unreachable or rejected the credentials."""


class FetchError(PullexecError):
    """Backend failed while retrieving work (distinct from "no work")."""


class AcknowledgeError(PullexecError):
    """Backend failed to mark a processed item as done."""


class ReportFailureError(PullexecError):
    """Backend failed to record a failed item."""


class TemplateError(PullexecError, ValueError):
    """Payload or record could not be used to resolve a template."""


class ExecutionError(PullexecError):
    """External program could not be started."""

    def __init__(self, message: str, *, command_head: str | None = None) -> None:
        super().__init__(message)
        self.command_head = command_head
