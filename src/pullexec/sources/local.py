"""Source that takes its single work item from the environment."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pullexec.config import setting
from pullexec.models import WorkItem
from pullexec.sources.base import BaseWorkSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LocalSettings:
    """Payload handed over directly by the caller."""

    payload: str = setting(env="PAYLOAD", default="", help="Payload for the local driver.")


class LocalWorkSource(BaseWorkSource):
    """Serve ``PULLEXEC_PAYLOAD`` (or ``--payload``) as the only work item."""

    name = "local"
    settings_class = LocalSettings

    def fetch(self) -> WorkItem | None:
        payload = self.settings.payload
        if not payload:
            logger.debug("No local payload")
            return None
        return WorkItem(payload=payload.encode("utf-8"))
