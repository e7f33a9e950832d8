"""
Billing Reporter.

Consumes a batch of delivery queue messages, submits the valid ones to the
billing API in bulk and reconciles the usage record store with the outcome.

Outcomes per message:
  - Accepted (or already recorded) by the billing API: record completed, message acknowledged.
  - Invalid payload: record failed without calling the billing API, message acknowledged.
  - Rejected by the billing API: record failed, message acknowledged. The record
    is NOT returned to pending; whether to bill it again is an operator decision.
  - Still throttled after all retries: record failed, message left on the queue
    for redelivery (and eventually the dead-letter queue).
  - Undecodable body: nothing to reconcile; message left on the queue.

Store write failures are logged and swallowed. They never undo a billing call
that already happened.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from aws_lambda_powertools import Logger

from .billing import MAX_BATCH_SIZE, BillingUsage, MarketplaceBillingClient
from .exceptions import BillingApiError, RecordValidationError, ThrottlingError
from .fanout import fan_out
from .model import MeteringMessage, RecordKey, ReportSummary, SQSEventRecord
from .retry import THROTTLING_ERROR_CODES, RetryPolicy, is_throttling_error
from .store import UsageRecordStore


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_message(message: MeteringMessage) -> BillingUsage:
    """
    Checks that a message describes a billable record and builds its billing usage.

    Raises:
        RecordValidationError: With the first problem found.
    """
    if not message.customer_identifier or not isinstance(message.customer_identifier, str):
        raise RecordValidationError("customerIdentifier is required")
    if not message.timestamp or not _is_number(message.timestamp):
        raise RecordValidationError("timestamp is required")
    if not message.dimension or not isinstance(message.dimension, str):
        raise RecordValidationError("dimension is required")
    if not _is_number(message.quantity) or message.quantity <= 0:
        raise RecordValidationError("quantity must be a positive number")
    if message.quantity != int(message.quantity):
        raise RecordValidationError("quantity must be a whole number")
    return BillingUsage.from_epoch_ms(
        message.customer_identifier, message.dimension, int(message.quantity), int(message.timestamp)
    )


@dataclass
class _Entry:
    message_id: str
    record_key: RecordKey
    usage: BillingUsage


class BillingReporter:
    """
    Args:
        store: The usage record store.
        billing: Client for the billing API.
        retry: Backoff policy for throttled submissions.
        logger: Powertools logger.
        max_workers: Concurrent store updates.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        store: UsageRecordStore,
        billing: MarketplaceBillingClient,
        retry: RetryPolicy,
        logger: Logger,
        max_workers: int = 10,
        clock: Callable[[], int] = _now_ms,
    ):
        self._store = store
        self._billing = billing
        self._retry = retry
        self._logger = logger
        self._max_workers = max_workers
        self._clock = clock

    def process(self, records: List[SQSEventRecord]) -> ReportSummary:
        summary = ReportSummary(total=len(records))
        completions: List[RecordKey] = []
        failures: List[Tuple[RecordKey, str]] = []
        # Messages for the same record share one billing submission.
        validated: Dict[str, List[_Entry]] = {}

        for sqs_record in records:
            message_id = sqs_record["messageId"]
            try:
                message = MeteringMessage.from_json(sqs_record["body"])
                record_key = message.record_key
            except (ValueError, TypeError, KeyError) as e:
                self._logger.error("Could not decode metering message.", extra={"messageId": message_id, "error": str(e)})
                summary.retry_message_ids.append(message_id)
                continue

            try:
                usage = validate_message(message)
            except RecordValidationError as e:
                self._logger.warning(
                    "Metering record failed validation.",
                    extra={"messageId": message_id, "customerIdentifier": record_key[0], "error": str(e)},
                )
                summary.failed += 1
                failures.append((record_key, f"Validation failed: {e}"))
                continue

            validated.setdefault(usage.correlation_key, []).append(_Entry(message_id, record_key, usage))

        keys = list(validated)
        for i in range(0, len(keys), MAX_BATCH_SIZE):
            chunk = {k: validated[k] for k in keys[i : i + MAX_BATCH_SIZE]}
            self._submit(chunk, summary, completions, failures)

        self._reconcile(completions, failures)
        return summary

    def _submit(
        self,
        outstanding: Dict[str, List[_Entry]],
        summary: ReportSummary,
        completions: List[RecordKey],
        failures: List[Tuple[RecordKey, str]],
    ) -> None:
        """Submits one chunk, resubmitting only the throttled records on each retry."""

        def _attempt() -> None:
            response = self._billing.submit_batch([entries[0].usage for entries in outstanding.values()])
            throttled: Dict[str, List[_Entry]] = {}
            for key in response.accepted:
                for entry in outstanding[key]:
                    completions.append(entry.record_key)
                    summary.completed += 1
            for unprocessed in response.unprocessed:
                entries = outstanding[unprocessed.correlation_key]
                if unprocessed.error_code in THROTTLING_ERROR_CODES:
                    throttled[unprocessed.correlation_key] = entries
                    continue
                self._logger.warning(
                    "Usage record rejected by billing API.",
                    extra={"correlationKey": unprocessed.correlation_key, "errorCode": unprocessed.error_code},
                )
                for entry in entries:
                    failures.append((entry.record_key, f"{unprocessed.error_code}: {unprocessed.error_message}"))
                    summary.failed += 1
            outstanding.clear()
            outstanding.update(throttled)
            if outstanding:
                raise ThrottlingError(f"{len(outstanding)} usage records throttled")

        try:
            self._retry.call(_attempt, is_throttling_error, description="BatchMeterUsage")
            return
        except BillingApiError as e:
            self._logger.error("Billing API rejected the batch.", extra={"errorCode": e.code, "error": e.message})
            error, redeliver = str(e), False
        except Exception as e:
            if is_throttling_error(e):
                self._logger.error("Billing API still throttling after all retries.", extra={"error": str(e)})
            else:
                self._logger.exception("Unexpected error submitting usage to billing API.")
            error, redeliver = f"{type(e).__name__}: {e}", True

        for entries in outstanding.values():
            for entry in entries:
                failures.append((entry.record_key, error))
                summary.failed += 1
                if redeliver:
                    summary.retry_message_ids.append(entry.message_id)

    def _reconcile(self, completions: List[RecordKey], failures: List[Tuple[RecordKey, str]]) -> None:
        now_ms = self._clock()

        for outcome in fan_out(lambda key: self._store.mark_completed(key, now_ms), completions, self._max_workers):
            if not outcome.ok:
                self._logger.error(
                    "Error marking metered record completed; billing already succeeded.",
                    extra={"recordKey": list(outcome.item), "error": str(outcome.error)},
                )
            elif not outcome.value:
                self._logger.warning("Metered record not found in store.", extra={"recordKey": list(outcome.item)})

        for outcome in fan_out(lambda f: self._store.mark_failed(f[0], f[1], now_ms), failures, self._max_workers):
            key, error = outcome.item
            if not outcome.ok:
                self._logger.error(
                    "Error marking record failed.",
                    extra={"recordKey": list(key), "failure": error, "error": str(outcome.error)},
                )
            elif not outcome.value:
                self._logger.info("Record already completed or missing; failure not recorded.", extra={"recordKey": list(key)})
