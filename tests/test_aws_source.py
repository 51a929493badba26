from __future__ import annotations

import json

import allure
import pytest
from botocore.exceptions import ClientError

from pullexec.errors import AcknowledgeError, FetchError
from pullexec.sources.aws import SqsWorkSource

pytestmark = [
    allure.epic("Work Sources"),
    allure.feature("AWS SQS"),
]

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/jobs"


class _FakeSqs:
    def __init__(self, messages=None, *, error: Exception | None = None) -> None:
        self.messages = list(messages or [])
        self.error = error
        self.deleted: list[tuple[str, str]] = []
        self.receive_kwargs: dict = {}

    def receive_message(self, **kwargs):
        self.receive_kwargs = kwargs
        if self.error is not None:
            raise self.error
        if not self.messages:
            return {}
        return {"Messages": [self.messages.pop(0)]}

    def delete_message(self, *, QueueUrl: str, ReceiptHandle: str) -> None:  # noqa: N803
        if self.error is not None:
            raise self.error
        self.deleted.append((QueueUrl, ReceiptHandle))


def _client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)


def _source(client: _FakeSqs, **env: str) -> SqsWorkSource:
    source = SqsWorkSource(client=client)
    source.configure({"PULLEXEC_AWS_SQS_QUEUE_URL": QUEUE_URL, **env}, {})
    source.connect()
    return source


def test_receives_one_message_and_deletes_it_on_success() -> None:
    client = _FakeSqs([{"MessageId": "m-1", "Body": "hello", "ReceiptHandle": "rh-1"}])
    source = _source(client)

    item = source.fetch()
    source.acknowledge(item)

    assert item.payload == b"hello"
    assert client.receive_kwargs["MaxNumberOfMessages"] == 1
    assert client.deleted == [(QUEUE_URL, "rh-1")]


def test_include_id_wraps_body() -> None:
    client = _FakeSqs([{"MessageId": "m-2", "Body": "work", "ReceiptHandle": "rh-2"}])

    item = _source(client, PULLEXEC_AWS_SQS_INCLUDE_ID="true").fetch()

    assert json.loads(item.payload) == {"id": "m-2", "body": "work"}


def test_empty_queue_is_no_work() -> None:
    assert _source(_FakeSqs()).fetch() is None


def test_failure_leaves_message_for_redelivery() -> None:
    client = _FakeSqs([{"MessageId": "m-3", "Body": "x", "ReceiptHandle": "rh-3"}])
    source = _source(client)

    source.report_failure(source.fetch())

    assert client.deleted == []


def test_client_errors_are_wrapped() -> None:
    source = _source(_FakeSqs(error=_client_error("ReceiveMessage")))

    with pytest.raises(FetchError, match="AccessDenied"):
        source.fetch()


def test_delete_errors_raise_acknowledge_error() -> None:
    client = _FakeSqs([{"MessageId": "m-4", "Body": "x", "ReceiptHandle": "rh-4"}])
    source = _source(client)
    item = source.fetch()
    client.error = _client_error("DeleteMessage")

    with pytest.raises(AcknowledgeError):
        source.acknowledge(item)
