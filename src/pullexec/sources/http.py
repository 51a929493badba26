"""HTTP source: one request to retrieve work, optional requests to clear or fail it."""

from __future__ import annotations

import json
import logging
import ssl
from dataclasses import dataclass
from pathlib import Path

import httpx

from pullexec.config import parse_headers, parse_int_csv, parse_positive_float, setting
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
from pullexec.templating import MISSING, lookup, resolve_string, stringify

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class HttpSettings:
    """Retrieve, clear and fail request definitions plus client TLS options."""

    retrieve_url: str = setting(env="HTTP_RETRIEVE_URL", default="", required=True, help="URL that returns work.")
    retrieve_method: str = setting(env="HTTP_RETRIEVE_METHOD", default="GET", help="HTTP method for retrieve.")
    retrieve_content_type: str = setting(env="HTTP_RETRIEVE_CONTENT_TYPE", default="", help="Retrieve Content-Type.")
    retrieve_headers: dict[str, str] | None = setting(
        env="HTTP_RETRIEVE_HEADERS",
        parse=parse_headers,
        help="Retrieve headers as Name:value,Other:value.",
    )
    retrieve_body: str = setting(env="HTTP_RETRIEVE_BODY", default="", help="Retrieve request body.")
    retrieve_body_file: Path | None = setting(env="HTTP_RETRIEVE_BODY_FILE", parse=Path, help="Retrieve body file.")
    retrieve_successful_status_codes: tuple[int, ...] = setting(
        env="HTTP_RETRIEVE_SUCCESSFUL_STATUS_CODES",
        default=(),
        parse=parse_int_csv,
        help="Status codes that carry work; any other status means no work.",
    )
    retrieve_key_json_selector: str = setting(
        env="HTTP_RETRIEVE_KEY_JSON_SELECTOR",
        default="",
        help="Dotted path to the item key in the JSON response.",
    )
    retrieve_work_json_selector: str = setting(
        env="HTTP_RETRIEVE_WORK_JSON_SELECTOR",
        default="",
        help="Dotted path to the payload in the JSON response.",
    )
    clear_url: str = setting(env="HTTP_CLEAR_URL", default="", help="URL called after success; may use {{key}}.")
    clear_method: str = setting(env="HTTP_CLEAR_METHOD", default="GET", help="HTTP method for clear.")
    clear_content_type: str = setting(env="HTTP_CLEAR_CONTENT_TYPE", default="", help="Content-Type for clear.")
    clear_headers: dict[str, str] | None = setting(env="HTTP_CLEAR_HEADERS", parse=parse_headers, help="Clear headers.")
    clear_body: str = setting(env="HTTP_CLEAR_BODY", default="", help="Clear request body template.")
    clear_body_file: Path | None = setting(env="HTTP_CLEAR_BODY_FILE", parse=Path, help="Clear body template file.")
    clear_successful_status_codes: tuple[int, ...] = setting(
        env="HTTP_CLEAR_SUCCESSFUL_STATUS_CODES",
        default=(),
        parse=parse_int_csv,
        help="Accepted clear status codes (default: any 2xx).",
    )
    fail_url: str = setting(env="HTTP_FAIL_URL", default="", help="URL called after failure; may use {{key}}.")
    fail_method: str = setting(env="HTTP_FAIL_METHOD", default="GET", help="HTTP method for fail.")
    fail_content_type: str = setting(env="HTTP_FAIL_CONTENT_TYPE", default="", help="Content-Type for fail.")
    fail_headers: dict[str, str] | None = setting(env="HTTP_FAIL_HEADERS", parse=parse_headers, help="Fail headers.")
    fail_body: str = setting(env="HTTP_FAIL_BODY", default="", help="Fail request body template.")
    fail_body_file: Path | None = setting(env="HTTP_FAIL_BODY_FILE", parse=Path, help="File with fail body template.")
    fail_successful_status_codes: tuple[int, ...] = setting(
        env="HTTP_FAIL_SUCCESSFUL_STATUS_CODES",
        default=(),
        parse=parse_int_csv,
        help="Accepted fail status codes (default: any 2xx).",
    )
    tls_insecure: bool = setting(env="HTTP_TLS_INSECURE", default=False, boolean=True, help="Skip TLS verification.")
    tls_ca_file: Path | None = setting(env="HTTP_TLS_CA_FILE", parse=Path, help="CA bundle for TLS verification.")
    tls_cert_file: Path | None = setting(env="HTTP_TLS_CERT_FILE", parse=Path, help="Client certificate.")
    tls_key_file: Path | None = setting(env="HTTP_TLS_KEY_FILE", parse=Path, help="Client certificate key.")
    timeout_seconds: float = setting(
        env="HTTP_TIMEOUT_SECONDS",
        default=DEFAULT_TIMEOUT_SECONDS,
        parse=parse_positive_float,
        help="Per-request timeout.",
    )


@dataclass(frozen=True, slots=True)
class _RequestSpec:
    method: str
    url: str
    content_type: str
    headers: dict[str, str] | None
    body: str
    body_file: Path | None
    successful_status_codes: tuple[int, ...]

    def body_template(self) -> str:
        if self.body:
            return self.body
        if self.body_file is not None:
            return self.body_file.read_text("utf-8")
        return ""

    def request_headers(self) -> dict[str, str]:
        headers = dict(self.headers or {})
        if self.content_type:
            headers["Content-Type"] = self.content_type
        return headers

    def accepts(self, status_code: int) -> bool:
        if self.successful_status_codes:
            return status_code in self.successful_status_codes
        return 200 <= status_code < 300


class HttpWorkSource(BaseWorkSource):
    """Retrieve work from an HTTP endpoint and call back by item key."""

    name = "http"
    settings_class = HttpSettings

    def __init__(
        self,
        settings: HttpSettings | None = None,
        *,
        strict_templates: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(settings, strict_templates=strict_templates)
        self._transport = transport
        self._client: httpx.Client | None = None

    def validate_settings(self, settings: HttpSettings) -> None:
        if settings.tls_key_file is not None and settings.tls_cert_file is None:
            raise ConfigurationError("PULLEXEC_HTTP_TLS_KEY_FILE requires PULLEXEC_HTTP_TLS_CERT_FILE.")

    def _open(self, settings: HttpSettings) -> None:
        try:
            verify = _ssl_verify(settings)
        except (OSError, ssl.SSLError) as error:
            raise SourceConnectionError(f"Cannot load TLS material: {error}") from error
        self._client = httpx.Client(
            timeout=httpx.Timeout(settings.timeout_seconds),
            verify=verify,
            transport=self._transport,
            follow_redirects=True,
        )

    def _close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def fetch(self) -> WorkItem | None:
        settings: HttpSettings = self.settings
        spec = _RequestSpec(
            method=settings.retrieve_method,
            url=settings.retrieve_url,
            content_type=settings.retrieve_content_type,
            headers=settings.retrieve_headers,
            body=settings.retrieve_body,
            body_file=settings.retrieve_body_file,
            successful_status_codes=settings.retrieve_successful_status_codes,
        )
        try:
            response = self._send(spec, url=spec.url, body=spec.body_template())
        except (httpx.HTTPError, OSError) as error:
            raise FetchError(f"Retrieve request to {spec.url} failed: {error}") from error

        if not spec.accepts(response.status_code):
            if spec.successful_status_codes:
                logger.debug("Retrieve returned status %s; no work", response.status_code)
                return None
            raise FetchError(f"Retrieve request to {spec.url} returned status {response.status_code}")
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            logger.debug("Retrieve returned an empty body; no work")
            return None

        if not (settings.retrieve_key_json_selector or settings.retrieve_work_json_selector):
            return WorkItem(payload=response.content)
        return self._select(response.content, settings)

    def acknowledge(self, item: WorkItem) -> None:
        settings: HttpSettings = self.settings
        spec = _RequestSpec(
            method=settings.clear_method,
            url=settings.clear_url,
            content_type=settings.clear_content_type,
            headers=settings.clear_headers,
            body=settings.clear_body,
            body_file=settings.clear_body_file,
            successful_status_codes=settings.clear_successful_status_codes,
        )
        self._follow_up(spec, item, error_class=AcknowledgeError)

    def report_failure(self, item: WorkItem) -> None:
        settings: HttpSettings = self.settings
        spec = _RequestSpec(
            method=settings.fail_method,
            url=settings.fail_url,
            content_type=settings.fail_content_type,
            headers=settings.fail_headers,
            body=settings.fail_body,
            body_file=settings.fail_body_file,
            successful_status_codes=settings.fail_successful_status_codes,
        )
        self._follow_up(spec, item, error_class=ReportFailureError)

    def _select(self, content: bytes, settings: HttpSettings) -> WorkItem:
        try:
            document = json.loads(content)
        except ValueError as error:
            raise FetchError(f"Retrieve response is not valid JSON: {error}") from error

        key: str | None = None
        if settings.retrieve_key_json_selector:
            found = lookup(document, settings.retrieve_key_json_selector)
            if found is MISSING:
                raise FetchError(f"Key {settings.retrieve_key_json_selector!r} not found in response")
            key = stringify(found)
        payload = content
        if settings.retrieve_work_json_selector:
            found = lookup(document, settings.retrieve_work_json_selector)
            if found is MISSING:
                raise FetchError(f"Work {settings.retrieve_work_json_selector!r} not found in response")
            payload = stringify(found).encode("utf-8")
        record = document if isinstance(document, dict) else None
        return WorkItem(payload=payload, record=record, key=key)

    def _follow_up(
        self,
        spec: _RequestSpec,
        item: WorkItem,
        *,
        error_class: type[PullexecError],
    ) -> None:
        if not spec.url:
            return
        record = item.template_record()
        url = resolve_string(spec.url, payload=item.payload, record=record, strict=self.strict_templates)
        try:
            body = resolve_string(
                spec.body_template(),
                payload=item.payload,
                record=record,
                strict=self.strict_templates,
            )
            response = self._send(spec, url=url, body=body)
        except (httpx.HTTPError, OSError) as error:
            raise error_class(f"{spec.method} {url} failed: {error}") from error
        if not spec.accepts(response.status_code):
            raise error_class(f"{spec.method} {url} returned status {response.status_code}")
        logger.info("%s %s -> %s", spec.method, url, response.status_code)

    def _send(self, spec: _RequestSpec, *, url: str, body: str) -> httpx.Response:
        if self._client is None:
            raise httpx.TransportError("HTTP client is not connected")
        return self._client.request(
            spec.method.upper(),
            url,
            headers=spec.request_headers(),
            content=body.encode("utf-8") if body else None,
        )


def _ssl_verify(settings: HttpSettings) -> ssl.SSLContext | bool:
    if settings.tls_insecure:
        return False
    if settings.tls_ca_file is None and settings.tls_cert_file is None:
        return True
    context = ssl.create_default_context(
        cafile=str(settings.tls_ca_file) if settings.tls_ca_file is not None else None,
    )
    if settings.tls_cert_file is not None:
        context.load_cert_chain(
            certfile=str(settings.tls_cert_file),
            keyfile=str(settings.tls_key_file) if settings.tls_key_file is not None else None,
        )
    return context


