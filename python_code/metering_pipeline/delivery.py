"""
Delivery Queue: the FIFO SQS queue between the scanner and the reporter.

Messages are grouped by customer so SQS preserves per-customer order. The
deduplication id carries the enqueue time, so a record that was rolled back
and enqueued again in a later cycle is not swallowed by SQS's own
five-minute deduplication window.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Mapping

from aws_lambda_powertools import Logger
from mypy_boto3_sqs.client import SQSClient

from .exceptions import NotAttemptedError
from .fanout import Outcome, fan_out
from .model import MeteringMessage, SQSEventRecord, UsageRecord
from .retry import RetryPolicy


def _now_ms() -> int:
    return int(time.time() * 1000)


def dedup_id(record: UsageRecord, enqueue_ms: int) -> str:
    return f"{record.customer_identifier}-{record.create_timestamp}-{enqueue_ms}"


class DeliveryQueue:
    """
    Producer side of the delivery queue.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: URL of the FIFO queue.
        retry: Backoff policy applied to throttled sends.
        logger: Powertools logger.
        max_workers: Customer groups sent concurrently.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        sqs_client: SQSClient,
        queue_url: str,
        retry: RetryPolicy,
        logger: Logger,
        max_workers: int = 10,
        clock: Callable[[], int] = _now_ms,
    ):
        self._sqs = sqs_client
        self._queue_url = queue_url
        self._retry = retry
        self._logger = logger
        self._max_workers = max_workers
        self._clock = clock

    def send(self, record: UsageRecord) -> str:
        """Enqueues one record and returns the SQS message id."""
        message = MeteringMessage.from_record(record)
        enqueue_ms = self._clock()

        def _send() -> Dict[str, Any]:
            return self._sqs.send_message(
                QueueUrl=self._queue_url,
                MessageBody=message.to_json(),
                MessageGroupId=record.customer_identifier,
                MessageDeduplicationId=dedup_id(record, enqueue_ms),
                MessageAttributes={
                    "customerIdentifier": {"DataType": "String", "StringValue": record.customer_identifier},
                    "recordType": {"DataType": "String", "StringValue": "metering"},
                },
            )

        response = self._retry.call(_send, description="SQS send_message")
        return response["MessageId"]

    def _send_group(self, records: List[UsageRecord]) -> List[Outcome]:
        outcomes: List[Outcome] = []
        failed = False
        for record in records:
            if failed:
                outcomes.append(Outcome(item=record, error=NotAttemptedError(record.customer_identifier)))
                continue
            try:
                outcomes.append(Outcome(item=record, value=self.send(record)))
            except Exception as e:
                self._logger.error(
                    "Failed to send metering record to SQS.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp, "error": str(e)},
                )
                outcomes.append(Outcome(item=record, error=e))
                failed = True
        return outcomes

    def send_grouped(self, records: List[UsageRecord]) -> List[Outcome]:
        """
        Enqueues records, one sequential stream per customer and customers in parallel.

        Within a customer, records go out in `create_timestamp` order and the
        first failure holds back the rest of that customer's records.

        Returns:
            One Outcome per record (value is the SQS message id).
        """
        groups: "OrderedDict[str, List[UsageRecord]]" = OrderedDict()
        for record in records:
            groups.setdefault(record.customer_identifier, []).append(record)
        ordered = [sorted(group, key=lambda r: r.create_timestamp) for group in groups.values()]

        outcomes: List[Outcome] = []
        for group_outcome in fan_out(self._send_group, ordered, self._max_workers):
            if group_outcome.ok:
                outcomes.extend(group_outcome.value)
            else:
                outcomes.extend(Outcome(item=r, error=group_outcome.error) for r in group_outcome.item)
        return outcomes


def iter_sqs_records(event: Mapping[str, Any]) -> Iterator[SQSEventRecord]:
    """Yields the SQS message records of a Lambda event."""
    for record in event.get("Records", []) or []:
        yield record
