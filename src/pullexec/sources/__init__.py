"""Work source adapters keyed by driver name."""

from __future__ import annotations

from pullexec.errors import ConfigurationError
from pullexec.sources.aws import SqsWorkSource
from pullexec.sources.base import BaseWorkSource, WorkSource
from pullexec.sources.fs import FsWorkSource
from pullexec.sources.http import HttpWorkSource
from pullexec.sources.local import LocalWorkSource
from pullexec.sources.redis import RedisListSource, RedisPubSubSource, RedisStreamSource
from pullexec.sources.sql import (
    CockroachWorkSource,
    MssqlWorkSource,
    MysqlWorkSource,
    PostgresWorkSource,
    SqliteWorkSource,
)

_REGISTRY: dict[str, type[BaseWorkSource]] = {
    source_class.name: source_class
    for source_class in (
        LocalWorkSource,
        FsWorkSource,
        HttpWorkSource,
        PostgresWorkSource,
        CockroachWorkSource,
        MysqlWorkSource,
        MssqlWorkSource,
        SqliteWorkSource,
        RedisListSource,
        RedisPubSubSource,
        RedisStreamSource,
        SqsWorkSource,
    )
}


def available_sources() -> list[str]:
    return sorted(_REGISTRY)


def source_class(name: str) -> type[BaseWorkSource]:
    normalized = name.strip().lower()
    try:
        return _REGISTRY[normalized]
    except KeyError:
        raise ConfigurationError(
            f"Unknown driver {name!r}. Available: {', '.join(available_sources())}.",
        ) from None


def get_source(name: str, *, strict_templates: bool = False) -> WorkSource:
    """Create an unconfigured source for driver ``name``."""

    return source_class(name)(strict_templates=strict_templates)


def settings_classes() -> list[type]:
    """Distinct settings classes, in registration order, for CLI option generation."""

    seen: list[type] = []
    for source in _REGISTRY.values():
        if source.settings_class not in seen:
            seen.append(source.settings_class)
    return seen


__all__ = [
    "BaseWorkSource",
    "WorkSource",
    "available_sources",
    "get_source",
    "settings_classes",
    "source_class",
]
