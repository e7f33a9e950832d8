"""
Pending-Record Scanner.

Each cycle pages through the pending index, claims every record it finds with
an optimistic conditional update, and forwards the claimed records to the
delivery queue. Records whose enqueue failed are rolled back to pending so the
next cycle picks them up. Only a failure to query the store ends the job.
"""

import time
from typing import Callable

from aws_lambda_powertools import Logger

from .delivery import DeliveryQueue
from .exceptions import StoreQueryError
from .fanout import fan_out
from .model import BatchResult, MeteringPending, ScanSummary, UsageRecord
from .store import BATCH_SIZE, ClaimOutcome, UsageRecordStore

MAX_RECORDS_PER_EXECUTION = 1000
TIME_SAFETY_MARGIN_MS = 30_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class PendingRecordScanner:
    """
    Args:
        store: The usage record store.
        queue: Producer for the delivery queue.
        logger: Powertools logger.
        max_records: Upper bound of records attempted per invocation.
        safety_margin_ms: Stop when less execution time than this remains.
        max_workers: Concurrent claims and rollbacks per batch.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        store: UsageRecordStore,
        queue: DeliveryQueue,
        logger: Logger,
        max_records: int = MAX_RECORDS_PER_EXECUTION,
        safety_margin_ms: int = TIME_SAFETY_MARGIN_MS,
        max_workers: int = 10,
        clock: Callable[[], int] = _now_ms,
    ):
        self._store = store
        self._queue = queue
        self._logger = logger
        self._max_records = max_records
        self._safety_margin_ms = safety_margin_ms
        self._max_workers = max_workers
        self._clock = clock

    def run(self, remaining_time_ms: Callable[[], int]) -> ScanSummary:
        """
        Scans until the index is exhausted, `max_records` have been attempted, or
        the remaining execution time drops below the safety margin.

        Raises:
            StoreQueryError: If the pending index cannot be queried.
        """
        summary = ScanSummary()
        page_token = None
        while True:
            remaining = remaining_time_ms()
            if remaining < self._safety_margin_ms:
                self._logger.info("Approaching Lambda timeout, stopping scan.", extra={"remaining_ms": remaining})
                break
            if summary.attempted >= self._max_records:
                self._logger.info(f"Reached maximum records per execution ({self._max_records}), stopping.")
                break

            summary.iterations += 1
            limit = min(BATCH_SIZE, self._max_records - summary.attempted)
            try:
                records, page_token = self._store.query(MeteringPending.PENDING, page_token, limit=limit)
            except StoreQueryError:
                self._logger.exception("Fatal: unable to query pending metering records.")
                raise

            if not records and not page_token:
                self._logger.info("No more pending metering records found.")
                break

            if records:
                self._logger.info(
                    f"Found {len(records)} pending metering records.",
                    extra={"iteration": summary.iterations, "remaining_ms": remaining},
                )
                summary.add(self.process_batch(records))

            if not page_token:
                break

        return summary

    def process_batch(self, records: list[UsageRecord]) -> BatchResult:
        """Claims, enqueues and, where needed, rolls back one batch. Never raises."""
        result = BatchResult(attempted=len(records))
        claim_ms = self._clock()

        claimed: list[UsageRecord] = []
        for outcome in fan_out(lambda r: self._store.claim(r, claim_ms), records, self._max_workers):
            record = outcome.item
            if not outcome.ok:
                result.failed += 1
                result.errors.append(f"claim {record.customer_identifier}-{record.create_timestamp}: {outcome.error}")
                self._logger.error(
                    "Failed to mark record as processing.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp, "error": str(outcome.error)},
                )
            elif outcome.value is ClaimOutcome.CONFLICT:
                result.skipped += 1
                self._logger.info(
                    "Record already claimed by another worker.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp},
                )
            else:
                claimed.append(record)

        if not claimed:
            return result

        unsent = [o for o in self._queue.send_grouped(claimed) if not o.ok]
        result.succeeded = len(claimed) - len(unsent)
        if unsent:
            result.failed += len(unsent)
            self._rollback([o.item for o in unsent], f"Failed to enqueue record: {unsent[0].error}", result)

        self._logger.info(
            "Processed metering batch.",
            extra={"attempted": result.attempted, "succeeded": result.succeeded, "failed": result.failed, "skipped": result.skipped},
        )
        return result

    def _rollback(self, records: list[UsageRecord], error: str, result: BatchResult) -> None:
        result.errors.append(error)
        now_ms = self._clock()
        for outcome in fan_out(lambda r: self._store.rollback(r, error, now_ms), records, self._max_workers):
            record = outcome.item
            if not outcome.ok:
                # Left in processing; the reclaimer returns it to pending later.
                self._logger.error(
                    "Failed to roll back record.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp, "error": str(outcome.error)},
                )
            elif not outcome.value:
                self._logger.warning(
                    "Rollback skipped, record no longer processing.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp},
                )
