"""Redis sources: list pop, pub/sub channel, and stream entries."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar

import redis
from redis.exceptions import RedisError

from pullexec.config import parse_choice, parse_csv, setting
from pullexec.errors import (
    AcknowledgeError,
    ConfigurationError,
    FetchError,
    PullexecError,
    ReportFailureError,
    SourceConnectionError,
)
from pullexec.models import WorkItem
from pullexec.sources.base import BaseWorkSource
from pullexec.templating import encode_record

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379
DEFAULT_TIMEOUT_SECONDS = 30.0

STREAM_OP_ACK = "ack"
STREAM_OP_DEL = "del"
_parse_stream_op = parse_choice(STREAM_OP_ACK, STREAM_OP_DEL)


def _parse_block_ms(value: str) -> int:
    number = int(value)
    if number < 0:
        raise ValueError("must be >= 0")
    return number


@dataclass(frozen=True, slots=True)
class RedisSettings:
    """Connection options shared by every redis driver plus stream options."""

    host: str = setting(env="REDIS_HOST", default="localhost", help="Redis host.")
    port: int = setting(env="REDIS_PORT", default=DEFAULT_PORT, parse=int, help="Redis port.")
    password: str = setting(env="REDIS_PASSWORD", default="", help="Redis password.")
    db: int = setting(env="REDIS_DB", default=0, parse=int, help="Redis database number.")
    key: str = setting(env="REDIS_KEY", default="", required=True, help="List, channel or stream name.")
    enable_tls: bool = setting(env="REDIS_ENABLE_TLS", default=False, boolean=True, help="Connect over TLS.")
    tls_insecure: bool = setting(env="REDIS_TLS_INSECURE", default=False, boolean=True, help="Skip TLS verification.")
    tls_ca_file: Path | None = setting(env="REDIS_TLS_CA_FILE", parse=Path, help="CA bundle for TLS.")
    tls_cert_file: Path | None = setting(env="REDIS_TLS_CERT_FILE", parse=Path, help="Client certificate.")
    tls_key_file: Path | None = setting(env="REDIS_TLS_KEY_FILE", parse=Path, help="Client certificate key.")
    stream_consumer_group: str = setting(
        env="REDIS_STREAM_CONSUMER_GROUP",
        default="",
        help="Read the stream through this consumer group.",
    )
    stream_consumer_name: str = setting(
        env="REDIS_STREAM_CONSUMER_NAME",
        default="",
        help="Consumer name inside the group (default: random).",
    )
    stream_value_keys: tuple[str, ...] = setting(
        env="REDIS_STREAM_VALUE_KEYS",
        default=(),
        parse=parse_csv,
        help="Entry fields included in the payload (default: all).",
    )
    stream_block_ms: int | None = setting(
        env="REDIS_STREAM_BLOCK_MS",
        parse=_parse_block_ms,
        help="Block for new entries this long; 0 blocks forever.",
    )
    stream_clear_op: str = setting(
        env="REDIS_STREAM_CLEAR_OP",
        default="",
        parse=_parse_stream_op,
        help="ack or del after success.",
    )
    stream_fail_op: str = setting(
        env="REDIS_STREAM_FAIL_OP",
        default="",
        parse=_parse_stream_op,
        help="ack or del after failure.",
    )


class RedisWorkSource(BaseWorkSource):
    """Connection handling shared by the redis drivers."""

    name = "redis"
    settings_class = RedisSettings
    socket_timeout: ClassVar[float | None] = DEFAULT_TIMEOUT_SECONDS

    def __init__(
        self,
        settings: RedisSettings | None = None,
        *,
        strict_templates: bool = False,
        client: Any | None = None,
    ) -> None:
        super().__init__(settings, strict_templates=strict_templates)
        self._injected_client = client
        self._client: Any | None = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise SourceConnectionError(f"{self.name} source is not connected.")
        return self._client

    def _open(self, settings: RedisSettings) -> None:
        client = self._injected_client or self._create_client(settings)
        try:
            client.ping()
        except RedisError as error:
            raise SourceConnectionError(
                f"Cannot connect to redis at {settings.host}:{settings.port}: {error}",
            ) from error
        self._client = client

    def _close(self) -> None:
        client, self._client = self._client, None
        if client is not None and client is not self._injected_client:
            client.close()

    def _create_client(self, settings: RedisSettings) -> redis.Redis:
        options: dict[str, Any] = {}
        if settings.enable_tls:
            options.update(
                ssl=True,
                ssl_cert_reqs="none" if settings.tls_insecure else "required",
                ssl_ca_certs=str(settings.tls_ca_file) if settings.tls_ca_file else None,
                ssl_certfile=str(settings.tls_cert_file) if settings.tls_cert_file else None,
                ssl_keyfile=str(settings.tls_key_file) if settings.tls_key_file else None,
            )
        return redis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password or None,
            socket_connect_timeout=DEFAULT_TIMEOUT_SECONDS,
            socket_timeout=self.socket_timeout,
            decode_responses=False,
            **options,
        )


class RedisListSource(RedisWorkSource):
    """Pop one element from the head of a list."""

    name = "redis-list"

    def fetch(self) -> WorkItem | None:
        key = self.settings.key
        try:
            value = self.client.lpop(key)
        except RedisError as error:
            raise FetchError(f"LPOP {key} failed: {error}") from error
        if value is None:
            logger.debug("List %s is empty", key)
            return None
        return WorkItem(payload=_as_bytes(value))


class RedisPubSubSource(RedisWorkSource):
    """Block until one message is published on the channel."""

    name = "redis-pubsub"
    socket_timeout = None

    def __init__(
        self,
        settings: RedisSettings | None = None,
        *,
        strict_templates: bool = False,
        client: Any | None = None,
    ) -> None:
        super().__init__(settings, strict_templates=strict_templates, client=client)
        self._pubsub: Any | None = None

    def _open(self, settings: RedisSettings) -> None:
        super()._open(settings)
        try:
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(settings.key)
        except RedisError as error:
            raise SourceConnectionError(f"Cannot subscribe to {settings.key}: {error}") from error
        self._pubsub = pubsub

    def _close(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        try:
            if pubsub is not None:
                pubsub.close()
        finally:
            super()._close()

    def fetch(self) -> WorkItem | None:
        if self._pubsub is None:
            raise FetchError(f"{self.name} source is not subscribed.")
        try:
            for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                return WorkItem(payload=_as_bytes(message.get("data", b"")))
        except RedisError as error:
            raise FetchError(f"Receiving from {self.settings.key} failed: {error}") from error
        logger.debug("Subscription to %s ended", self.settings.key)
        return None


class RedisStreamSource(RedisWorkSource):
    """Read one stream entry, directly or through a consumer group.

    The entry fields become the record and, JSON-encoded, the payload. The
    entry id is the item key used by the ``ack`` and ``del`` follow-ups.
    """

    name = "redis-stream"

    def __init__(
        self,
        settings: RedisSettings | None = None,
        *,
        strict_templates: bool = False,
        client: Any | None = None,
    ) -> None:
        super().__init__(settings, strict_templates=strict_templates, client=client)
        self._consumer_name = ""

    def validate_settings(self, settings: RedisSettings) -> None:
        uses_ack = STREAM_OP_ACK in (settings.stream_clear_op, settings.stream_fail_op)
        if uses_ack and not settings.stream_consumer_group:
            raise ConfigurationError(
                "PULLEXEC_REDIS_STREAM_*_OP=ack requires PULLEXEC_REDIS_STREAM_CONSUMER_GROUP.",
            )

    def _open(self, settings: RedisSettings) -> None:
        super()._open(settings)
        self._consumer_name = settings.stream_consumer_name or f"pullexec-{uuid.uuid4()}"

    def fetch(self) -> WorkItem | None:
        settings: RedisSettings = self.settings
        try:
            if settings.stream_consumer_group:
                response = self.client.xreadgroup(
                    settings.stream_consumer_group,
                    self._consumer_name,
                    {settings.key: ">"},
                    count=1,
                    block=settings.stream_block_ms,
                )
            else:
                block = 0 if settings.stream_block_ms is None else settings.stream_block_ms
                response = self.client.xread({settings.key: "$"}, count=1, block=block)
        except RedisError as error:
            raise FetchError(f"Reading stream {settings.key} failed: {error}") from error

        entry = _first_entry(response)
        if entry is None:
            logger.debug("Stream %s has no new entries", settings.key)
            return None
        entry_id, fields = entry
        record = {_as_text(name): _as_text(value) for name, value in fields.items()}
        if settings.stream_value_keys:
            missing = [name for name in settings.stream_value_keys if name not in record]
            if missing:
                raise FetchError(f"Stream entry {entry_id} has no field(s): {', '.join(missing)}")
            record = {name: record[name] for name in settings.stream_value_keys}
        return WorkItem(payload=encode_record(record), record=record, key=entry_id)

    def acknowledge(self, item: WorkItem) -> None:
        self._apply(self.settings.stream_clear_op, item, error_class=AcknowledgeError)

    def report_failure(self, item: WorkItem) -> None:
        self._apply(self.settings.stream_fail_op, item, error_class=ReportFailureError)

    def _apply(self, operation: str, item: WorkItem, *, error_class: type[PullexecError]) -> None:
        if not operation:
            return
        if item.key is None:
            raise error_class("Stream item has no entry id.")
        settings: RedisSettings = self.settings
        try:
            if operation == STREAM_OP_ACK:
                self.client.xack(settings.key, settings.stream_consumer_group, item.key)
            else:
                self.client.xdel(settings.key, item.key)
        except RedisError as error:
            raise error_class(f"{operation} of {item.key} on {settings.key} failed: {error}") from error
        logger.info("Stream %s: %s %s", settings.key, operation, item.key)


def _first_entry(response: Any) -> tuple[str, dict[Any, Any]] | None:
    # [[stream, [(entry_id, fields), ...]], ...]
    for _stream, entries in response or ():
        for entry_id, fields in entries:
            return _as_text(entry_id), dict(fields or {})
    return None


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
