from __future__ import annotations

import json

import allure
import httpx
import pytest

from pullexec.errors import AcknowledgeError, FetchError, TemplateError
from pullexec.sources.http import HttpWorkSource

pytestmark = [
    allure.epic("Work Sources"),
    allure.feature("HTTP"),
]


class _Server:
    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200)


def _source(server: _Server, env: dict[str, str], *, strict: bool = False) -> HttpWorkSource:
    source = HttpWorkSource(transport=httpx.MockTransport(server), strict_templates=strict)
    source.configure({"PULLEXEC_HTTP_RETRIEVE_URL": "https://api.test/next", **env}, {})
    source.connect()
    return source


def test_fetch_returns_raw_body_without_selectors() -> None:
    server = _Server(httpx.Response(200, content=b"raw work"))

    item = _source(server, {}).fetch()

    assert item is not None
    assert item.payload == b"raw work"
    assert server.requests[0].method == "GET"


def test_selectors_pick_key_and_work_and_clear_uses_key() -> None:
    document = {"id": 12, "job": {"name": "build"}}
    server = _Server(httpx.Response(200, json=document), httpx.Response(204))
    source = _source(
        server,
        {
            "PULLEXEC_HTTP_RETRIEVE_KEY_JSON_SELECTOR": "id",
            "PULLEXEC_HTTP_RETRIEVE_WORK_JSON_SELECTOR": "job",
            "PULLEXEC_HTTP_CLEAR_URL": "https://api.test/jobs/{{key}}/done",
            "PULLEXEC_HTTP_CLEAR_METHOD": "POST",
            "PULLEXEC_HTTP_CLEAR_BODY": '{"job": {{payload}}}',
            "PULLEXEC_HTTP_CLEAR_HEADERS": "X-Token:secret",
        },
    )

    item = source.fetch()
    source.acknowledge(item)

    assert item.key == "12"
    assert item.payload == b'{"name":"build"}'
    clear = server.requests[1]
    assert clear.method == "POST"
    assert str(clear.url) == "https://api.test/jobs/12/done"
    assert clear.headers["X-Token"] == "secret"
    assert json.loads(clear.content) == {"job": {"name": "build"}}


def test_selected_key_wins_over_document_key_field() -> None:
    server = _Server(httpx.Response(200, json={"id": 12, "key": "other-job"}), httpx.Response(204))
    source = _source(
        server,
        {
            "PULLEXEC_HTTP_RETRIEVE_KEY_JSON_SELECTOR": "id",
            "PULLEXEC_HTTP_CLEAR_URL": "https://api.test/jobs/{{key}}/done",
        },
    )

    source.acknowledge(source.fetch())

    assert str(server.requests[1].url) == "https://api.test/jobs/12/done"


def test_unaccepted_status_is_no_work_when_codes_are_configured() -> None:
    server = _Server(httpx.Response(404))

    item = _source(server, {"PULLEXEC_HTTP_RETRIEVE_SUCCESSFUL_STATUS_CODES": "200"}).fetch()

    assert item is None


def test_unexpected_status_without_codes_is_fetch_error() -> None:
    server = _Server(httpx.Response(500))

    with pytest.raises(FetchError, match="500"):
        _source(server, {}).fetch()


def test_empty_body_is_no_work() -> None:
    assert _source(_Server(httpx.Response(204)), {}).fetch() is None


def test_transport_error_is_fetch_error() -> None:
    def _broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    source = HttpWorkSource(transport=httpx.MockTransport(_broken))
    source.configure({"PULLEXEC_HTTP_RETRIEVE_URL": "https://api.test/next"}, {})
    source.connect()

    with pytest.raises(FetchError, match="refused"):
        source.fetch()


def test_failed_follow_up_raises_acknowledge_error() -> None:
    server = _Server(httpx.Response(200, content=b"w"), httpx.Response(500))
    source = _source(server, {"PULLEXEC_HTTP_CLEAR_URL": "https://api.test/done"})

    item = source.fetch()

    with pytest.raises(AcknowledgeError, match="500"):
        source.acknowledge(item)


def test_follow_up_without_url_is_noop() -> None:
    server = _Server(httpx.Response(200, content=b"w"))
    source = _source(server, {})

    item = source.fetch()
    source.acknowledge(item)
    source.report_failure(item)

    assert len(server.requests) == 1


def test_strict_templates_reject_unknown_keys() -> None:
    server = _Server(httpx.Response(200, json={"id": 1}))
    source = _source(server, {"PULLEXEC_HTTP_FAIL_URL": "https://api.test/{{missing}}"}, strict=True)

    item = source.fetch()

    with pytest.raises(TemplateError):
        source.report_failure(item)
