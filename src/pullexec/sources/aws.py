"""Amazon SQS source."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pullexec.config import setting
from pullexec.errors import AcknowledgeError, FetchError, SourceConnectionError
from pullexec.models import WorkItem
from pullexec.sources.base import BaseWorkSource

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


@dataclass(frozen=True, slots=True)
class SqsSettings:
    queue_url: str = setting(env="AWS_SQS_QUEUE_URL", default="", required=True, help="SQS queue URL.")
    region: str = setting(env="AWS_REGION", default="", help="AWS region (default: AWS_REGION or us-east-1).")
    role_arn: str = setting(env="AWS_ROLE_ARN", default="", help="Role to assume before reading the queue.")
    endpoint_url: str = setting(env="AWS_ENDPOINT_URL", default="", help="Custom endpoint, e.g. LocalStack.")
    include_id: bool = setting(
        env="AWS_SQS_INCLUDE_ID",
        default=False,
        boolean=True,
        help='Wrap the payload as {"id": ..., "body": ...}.',
    )
    wait_time_seconds: int = setting(
        env="AWS_SQS_WAIT_TIME_SECONDS",
        default=0,
        parse=int,
        help="Long-poll wait for ReceiveMessage (0-20).",
    )


class SqsWorkSource(BaseWorkSource):
    """Receive one message; delete it after success.

    Failures are left alone so the visibility timeout redelivers the message.
    """

    name = "aws-sqs"
    settings_class = SqsSettings

    def __init__(
        self,
        settings: SqsSettings | None = None,
        *,
        strict_templates: bool = False,
        client: Any | None = None,
    ) -> None:
        super().__init__(settings, strict_templates=strict_templates)
        self._client = client

    def _open(self, settings: SqsSettings) -> None:
        if self._client is not None:
            return
        try:
            session = self._session(settings)
            client_kwargs: dict[str, Any] = {"service_name": "sqs"}
            if settings.endpoint_url:
                client_kwargs["endpoint_url"] = settings.endpoint_url
            self._client = session.client(**client_kwargs)
        except (BotoCoreError, ClientError) as error:
            raise SourceConnectionError(f"Cannot create SQS client: {error}") from error

    def _session(self, settings: SqsSettings) -> boto3.session.Session:
        region = settings.region or boto3.session.Session().region_name or DEFAULT_REGION
        if not settings.role_arn:
            return boto3.session.Session(region_name=region)
        sts = boto3.client("sts", region_name=region)
        credentials = sts.assume_role(
            RoleArn=settings.role_arn,
            RoleSessionName=f"pullexec-{uuid.uuid4()}",
        )["Credentials"]
        return boto3.session.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=region,
        )

    def fetch(self) -> WorkItem | None:
        settings: SqsSettings = self.settings
        try:
            response = self._client.receive_message(
                QueueUrl=settings.queue_url,
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
                MaxNumberOfMessages=1,
                WaitTimeSeconds=settings.wait_time_seconds,
            )
        except (BotoCoreError, ClientError) as error:
            raise FetchError(f"ReceiveMessage on {settings.queue_url} failed: {error}") from error

        messages = response.get("Messages") or []
        if not messages:
            logger.debug("Queue %s is empty", settings.queue_url)
            return None
        message = messages[0]
        body = message.get("Body", "")
        record = {"id": message.get("MessageId", ""), "body": body}
        if settings.include_id:
            payload = json.dumps(record, separators=(",", ":")).encode("utf-8")
        else:
            payload = body.encode("utf-8")
        return WorkItem(payload=payload, record=record, key=message["ReceiptHandle"])

    def acknowledge(self, item: WorkItem) -> None:
        settings: SqsSettings = self.settings
        try:
            self._client.delete_message(QueueUrl=settings.queue_url, ReceiptHandle=item.key)
        except (BotoCoreError, ClientError) as error:
            raise AcknowledgeError(f"DeleteMessage on {settings.queue_url} failed: {error}") from error
        logger.info("Deleted message %s", (item.record or {}).get("id", ""))

    def _close(self) -> None:
        self._client = None
