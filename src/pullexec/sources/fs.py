"""Filesystem source: one file per work item, removed or moved afterwards."""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from pullexec.config import parse_choice, setting
from pullexec.errors import AcknowledgeError, ConfigurationError, FetchError, ReportFailureError
from pullexec.models import WorkItem
from pullexec.sources.base import BaseWorkSource
from pullexec.templating import resolve_string

logger = logging.getLogger(__name__)

OPERATION_RM = "rm"
OPERATION_MV = "mv"
_parse_operation = parse_choice(OPERATION_RM, OPERATION_MV)


@dataclass(frozen=True, slots=True)
class FsSettings:
    """Where to look for work files and what to do with them afterwards."""

    folder: Path = setting(env="FS_FOLDER", parse=Path, required=True, help="Work folder.")
    key: str = setting(env="FS_KEY", default="", help="Exact file name to process.")
    key_prefix: str = setting(env="FS_KEY_PREFIX", default="", help="Process the first file with this prefix.")
    key_regex: str = setting(env="FS_KEY_REGEX", default="", help="Process the first file matching this regex.")
    clear_op: str = setting(env="FS_CLEAR_OP", default="", parse=_parse_operation, help="rm or mv after success.")
    clear_folder: Path | None = setting(env="FS_CLEAR_FOLDER", parse=Path, help="mv destination after success.")
    clear_key: str = setting(env="FS_CLEAR_KEY", default="", help="Destination name for mv after success.")
    clear_key_template: str = setting(
        env="FS_CLEAR_KEY_TEMPLATE",
        default="",
        help="Destination name template for mv after success, e.g. done/{{key}}.",
    )
    fail_op: str = setting(env="FS_FAIL_OP", default="", parse=_parse_operation, help="rm or mv after failure.")
    fail_folder: Path | None = setting(env="FS_FAIL_FOLDER", parse=Path, help="mv destination after failure.")
    fail_key: str = setting(env="FS_FAIL_KEY", default="", help="Destination name for mv after failure.")
    fail_key_template: str = setting(
        env="FS_FAIL_KEY_TEMPLATE",
        default="",
        help="Destination name template for mv after failure.",
    )


@dataclass(frozen=True, slots=True)
class _FileOperation:
    operation: str
    folder: Path | None
    key: str
    key_template: str


class FsWorkSource(BaseWorkSource):
    """Pick one file from a folder by exact key, prefix, or regex."""

    name = "fs"
    settings_class = FsSettings

    def validate_settings(self, settings: FsSettings) -> None:
        if not (settings.key or settings.key_prefix or settings.key_regex):
            raise ConfigurationError(
                "fs driver needs one of PULLEXEC_FS_KEY, PULLEXEC_FS_KEY_PREFIX, PULLEXEC_FS_KEY_REGEX.",
            )
        if settings.key_regex:
            try:
                re.compile(settings.key_regex)
            except re.error as error:
                raise ConfigurationError(f"Invalid PULLEXEC_FS_KEY_REGEX: {error}") from error
        if settings.clear_op == OPERATION_MV and settings.clear_folder is None:
            raise ConfigurationError("PULLEXEC_FS_CLEAR_OP=mv requires PULLEXEC_FS_CLEAR_FOLDER.")
        if settings.fail_op == OPERATION_MV and settings.fail_folder is None:
            raise ConfigurationError("PULLEXEC_FS_FAIL_OP=mv requires PULLEXEC_FS_FAIL_FOLDER.")

    def fetch(self) -> WorkItem | None:
        settings: FsSettings = self.settings
        if settings.key:
            key: str | None = settings.key
        elif settings.key_prefix:
            key = self._find_first(lambda name: name.startswith(settings.key_prefix))
        else:
            pattern = re.compile(settings.key_regex)
            key = self._find_first(lambda name: pattern.search(name) is not None)
        if key is None:
            logger.debug("No matching file in %s", settings.folder)
            return None

        path = settings.folder / key
        try:
            payload = path.read_bytes()
        except OSError as error:
            raise FetchError(f"Cannot read work file {path}: {error}") from error
        return WorkItem(payload=payload, key=key)

    def acknowledge(self, item: WorkItem) -> None:
        settings: FsSettings = self.settings
        operation = _FileOperation(
            operation=settings.clear_op,
            folder=settings.clear_folder,
            key=settings.clear_key,
            key_template=settings.clear_key_template,
        )
        try:
            self._apply(operation, item)
        except OSError as error:
            raise AcknowledgeError(f"Cannot clear work file {item.key}: {error}") from error

    def report_failure(self, item: WorkItem) -> None:
        settings: FsSettings = self.settings
        operation = _FileOperation(
            operation=settings.fail_op,
            folder=settings.fail_folder,
            key=settings.fail_key,
            key_template=settings.fail_key_template,
        )
        try:
            self._apply(operation, item)
        except OSError as error:
            raise ReportFailureError(f"Cannot move failed work file {item.key}: {error}") from error

    def _find_first(self, matches) -> str | None:
        folder: Path = self.settings.folder
        for root, dirs, files in os.walk(folder):
            dirs.sort()
            for file_name in sorted(files):
                relative = (Path(root) / file_name).relative_to(folder).as_posix()
                if matches(relative):
                    return relative
        return None

    def _apply(self, operation: _FileOperation, item: WorkItem) -> None:
        if not operation.operation or item.key is None:
            return
        source_path = self.settings.folder / item.key
        if operation.operation == OPERATION_RM:
            source_path.unlink()
            logger.info("Removed %s", source_path)
            return

        if operation.key_template:
            destination_key = resolve_string(
                operation.key_template,
                payload=item.payload,
                record=item.template_record(),
            )
        else:
            destination_key = operation.key or item.key
        if operation.folder is None:
            raise OSError("destination folder is not set")
        destination = operation.folder / destination_key
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source_path), str(destination))
        logger.info("Moved %s to %s", source_path, destination)
