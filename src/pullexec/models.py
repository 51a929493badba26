"""Domain models passed between sources, the executor, and the worker."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pullexec.templating import encode_record, resolve_params, resolve_string


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One unit of work retrieved by a single fetch.

    ``record`` is set by sources that return rows, documents or message
    attributes; ``key`` identifies the item for a later acknowledge/fail call.
    """

    payload: bytes
    record: Mapping[str, Any] | None = None
    key: str | None = None

    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def template_record(self) -> Mapping[str, Any] | None:
        """Mapping used to resolve follow-up templates for this item."""

        if self.key is None:
            return self.record
        return {**(self.record or {}), "key": self.key}


@dataclass(frozen=True, slots=True)
class ResolvedQuery:
    """Query text and parameters ready to be sent to a backend."""

    text: str
    params: tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True)
class QueryTemplate:
    """Query text plus an optional positional parameter list.

    Both parts may hold placeholders. Resolution builds a new
    :class:`ResolvedQuery` and never changes the template itself.
    """

    text: str = ""
    params: tuple[Any, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()

    def resolve(self, item: WorkItem, *, strict: bool = False) -> ResolvedQuery:
        """Resolve against the item; with a record, ``{{payload}}`` is the encoded record."""

        record = item.template_record()
        payload = item.payload if item.record is None else encode_record(item.record)
        return ResolvedQuery(
            text=resolve_string(self.text, payload=payload, record=record, strict=strict),
            params=tuple(
                resolve_params(self.params, payload=payload, record=record, strict=strict),
            ),
        )


class IterationOutcome(str, Enum):
    """Result of one fetch → execute → acknowledge/fail iteration."""

    NO_WORK = "no_work"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FETCH_ERROR = "fetch_error"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Exit status of the external program; output is never captured."""

    exit_code: int
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
