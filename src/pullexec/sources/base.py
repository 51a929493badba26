"""Common work source contracts."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, runtime_checkable

from pullexec.config import load_settings
from pullexec.errors import ConfigurationError
from pullexec.models import WorkItem

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkSource(Protocol):
    """Interface every backend adapter implements, in order of use."""

    name: str

    def configure(self, environment: Mapping[str, str], flags: Mapping[str, Any]) -> None:
        """Build immutable settings; environment variables override flags."""
        raise NotImplementedError

    def connect(self) -> None:
        """Open the backend client handle."""
        raise NotImplementedError

    def fetch(self) -> WorkItem | None:
        """Retrieve at most one item; ``None`` means there is no work."""
        raise NotImplementedError

    def acknowledge(self, item: WorkItem) -> None:
        """Mark an item as processed after the program succeeded."""
        raise NotImplementedError

    def report_failure(self, item: WorkItem) -> None:
        """Record a failed item after the program exited non-zero."""
        raise NotImplementedError

    def release(self) -> None:
        """Close handles. Called once at shutdown."""
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class NoSettings:
    """Settings for sources that need no configuration."""


class BaseWorkSource:
    """Shared configure/connect/release bookkeeping for adapters.

    Subclasses set ``name`` and ``settings_class``, implement :meth:`fetch`, and
    override :meth:`_open`, :meth:`_close`, :meth:`acknowledge` and
    :meth:`report_failure` where the backend needs them. The client handle
    lives on the instance.
    """

    name: ClassVar[str] = ""
    settings_class: ClassVar[type[Any]] = NoSettings

    def __init__(self, settings: Any | None = None, *, strict_templates: bool = False) -> None:
        self._settings = settings
        self._connected = False
        self.strict_templates = strict_templates

    @property
    def settings(self) -> Any:
        if self._settings is None:
            raise ConfigurationError(f"Source {self.name!r} is not configured.")
        return self._settings

    @property
    def connected(self) -> bool:
        return self._connected

    def configure(self, environment: Mapping[str, str], flags: Mapping[str, Any]) -> None:
        if self._connected:
            raise ConfigurationError(
                f"Source {self.name!r} is already connected; create a new source to reconfigure.",
            )
        settings = load_settings(self.settings_class, environment, flags)
        self.validate_settings(settings)
        self._settings = settings
        logger.debug("Configured %s source: %s", self.name, type(settings).__name__)

    def validate_settings(self, settings: Any) -> None:
        """Raise ``ConfigurationError`` for invalid combinations."""

    def connect(self) -> None:
        if self._connected:
            return
        settings = self.settings
        self._open(settings)
        self._connected = True
        logger.debug("Connected %s source", self.name)

    def fetch(self) -> WorkItem | None:
        raise NotImplementedError

    def acknowledge(self, item: WorkItem) -> None:
        return None

    def report_failure(self, item: WorkItem) -> None:
        return None

    def release(self) -> None:
        if not self._connected:
            return
        try:
            self._close()
        finally:
            self._connected = False
        logger.debug("Released %s source", self.name)

    def _open(self, settings: Any) -> None:
        return None

    def _close(self) -> None:
        return None
