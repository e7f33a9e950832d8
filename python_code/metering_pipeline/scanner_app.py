"""
Lambda handler for the scheduled (hourly) metering job.

Each invocation:
  - Builds (once per execution environment) the store, queue, reclaimer and
    scanner from configuration and injected boto3 clients.
  - Resets records stuck in processing (best effort).
  - Scans pending records into the delivery queue until the index is empty,
    the per-invocation cap is hit, or the Lambda is about to time out.
  - Emits outcome metrics; re-raises fatal errors so the scheduler records a failure.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit

from . import clients
from .config import ScannerSettings
from .delivery import DeliveryQueue
from .reclaimer import StuckRecordReclaimer
from .retry import RetryPolicy
from .scanner import PendingRecordScanner
from .store import UsageRecordStore

logger = Logger(service="metering-scanner")
metrics = Metrics(namespace="SaaSMetering", service="metering-scanner")


@dataclass
class ScannerRuntime:
    settings: ScannerSettings
    reclaimer: StuckRecordReclaimer
    scanner: PendingRecordScanner


def build_runtime(settings: ScannerSettings, aws: clients.AwsClients) -> ScannerRuntime:
    """Wires the scanner components around the given clients."""
    store = UsageRecordStore(aws.dynamodb.Table(settings.table_name), settings.index_name, logger)
    retry = RetryPolicy(
        max_retries=settings.max_retries,
        base_delay_seconds=settings.retry_base_delay_ms / 1000,
        logger=logger,
        jitter_seconds=0.1,
    )
    queue = DeliveryQueue(aws.sqs, settings.queue_url, retry, logger, max_workers=settings.max_workers)
    reclaimer = StuckRecordReclaimer(
        store, logger, timeout_minutes=settings.processing_timeout_minutes, max_workers=settings.max_workers
    )
    scanner = PendingRecordScanner(
        store,
        queue,
        logger,
        max_records=settings.max_records,
        safety_margin_ms=settings.safety_margin_seconds * 1000,
        max_workers=settings.max_workers,
    )
    return ScannerRuntime(settings, reclaimer, scanner)


@lru_cache(maxsize=1)
def get_runtime() -> ScannerRuntime:
    settings = ScannerSettings.from_env()
    logger.setLevel(settings.log_level)
    return build_runtime(settings, clients.get_boto_clients())


@metrics.log_metrics
@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    start_time = datetime.now(timezone.utc)
    logger.info(
        "Starting hourly metering job.",
        extra={"eventTime": event.get("time"), "remaining_ms": context.get_remaining_time_in_millis()},
    )

    try:
        runtime = get_runtime()
        metrics.add_dimension(name="environment", value=runtime.settings.environment)

        reclaimed = runtime.reclaimer.run()
        summary = runtime.scanner.run(context.get_remaining_time_in_millis)
    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        metrics.add_metric(name="ScanFailed", unit=MetricUnit.Count, value=1)
        logger.exception(
            "Fatal error in hourly metering job.",
            extra={"error_type": type(e).__name__, "error_message": str(e), "latency_ms": latency_ms},
        )
        raise

    metrics.add_metric(name="RecordsReclaimed", unit=MetricUnit.Count, value=reclaimed)
    metrics.add_metric(name="RecordsAttempted", unit=MetricUnit.Count, value=summary.attempted)
    metrics.add_metric(name="RecordsEnqueued", unit=MetricUnit.Count, value=summary.succeeded)
    metrics.add_metric(name="RecordsFailed", unit=MetricUnit.Count, value=summary.failed)

    result = {
        "reclaimed": reclaimed,
        "attempted": summary.attempted,
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "skipped": summary.skipped,
        "iterations": summary.iterations,
        "latency_ms": int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000),
    }
    logger.info("Hourly metering job completed.", extra=result)
    if summary.errors:
        logger.error("Errors encountered during processing.", extra={"errors": summary.errors})
    return result
