"""
Stuck-Record Reclaimer.

Runs ahead of every scanner cycle and returns abandoned claims to pending.
This is best-effort cleanup: every error is logged and swallowed so the scan
that follows always runs.
"""

import time
from typing import Callable, List

from aws_lambda_powertools import Logger

from .fanout import fan_out
from .model import MeteringPending, RecordStatus, UsageRecord
from .store import UsageRecordStore

PROCESSING_TIMEOUT_MINUTES = 30


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_stuck(record: UsageRecord, cutoff_ms: int) -> bool:
    """
    A processing record is stuck when its claim is older than `cutoff_ms` or has
    no start time at all. Failed records are terminal and are left alone.
    """
    if record.metering_pending is not MeteringPending.PROCESSING:
        return False
    if record.status is RecordStatus.FAILED:
        return False
    if record.effective_pending is MeteringPending.PENDING:
        return True
    return record.processing_started < cutoff_ms


class StuckRecordReclaimer:
    def __init__(
        self,
        store: UsageRecordStore,
        logger: Logger,
        timeout_minutes: int = PROCESSING_TIMEOUT_MINUTES,
        max_workers: int = 10,
        clock: Callable[[], int] = _now_ms,
    ):
        self._store = store
        self._logger = logger
        self._timeout_ms = timeout_minutes * 60 * 1000
        self._max_workers = max_workers
        self._clock = clock

    def _find_stuck(self, cutoff_ms: int) -> List[UsageRecord]:
        stuck: List[UsageRecord] = []
        page_token = None
        while True:
            records, page_token = self._store.query(MeteringPending.PROCESSING, page_token, limit=None)
            stuck.extend(r for r in records if is_stuck(r, cutoff_ms))
            if not page_token:
                return stuck

    def run(self) -> int:
        """Resets every stuck record and returns how many were reset."""
        cutoff_ms = self._clock() - self._timeout_ms
        try:
            stuck = self._find_stuck(cutoff_ms)
        except Exception:
            self._logger.exception("Error finding stuck processing records.")
            return 0

        if not stuck:
            return 0

        self._logger.info(f"Found {len(stuck)} stuck processing records, resetting to pending.")
        reset = 0
        for outcome in fan_out(self._store.reset_stuck, stuck, self._max_workers):
            record = outcome.item
            if not outcome.ok:
                self._logger.error(
                    "Failed to reset stuck record.",
                    extra={"customerIdentifier": record.customer_identifier, "create_timestamp": record.create_timestamp, "error": str(outcome.error)},
                )
            elif outcome.value:
                reset += 1
        self._logger.info(f"Reset {reset} stuck records.")
        return reset
