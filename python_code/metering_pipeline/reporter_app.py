"""
Lambda handler for the SQS-triggered metering processor.

Reports one batch of delivery queue messages to AWS Marketplace and answers
with an SQS partial-batch response: only messages worth redelivering are
listed in `batchItemFailures`, everything else is acknowledged.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit

from . import clients
from .billing import MarketplaceBillingClient
from .config import ReporterSettings
from .delivery import iter_sqs_records
from .reporter import BillingReporter
from .retry import RetryPolicy
from .store import UsageRecordStore

logger = Logger(service="metering-processor")
metrics = Metrics(namespace="SaaSMetering", service="metering-processor")


@dataclass
class ReporterRuntime:
    settings: ReporterSettings
    reporter: BillingReporter


def build_runtime(settings: ReporterSettings, aws: clients.AwsClients) -> ReporterRuntime:
    """Wires the reporter around the given clients."""
    store = UsageRecordStore(aws.dynamodb.Table(settings.table_name), logger=logger)
    billing = MarketplaceBillingClient(aws.metering, settings.product_code)
    retry = RetryPolicy(
        max_retries=settings.max_retries,
        base_delay_seconds=settings.retry_base_delay_ms / 1000,
        logger=logger,
    )
    reporter = BillingReporter(store, billing, retry, logger, max_workers=settings.max_workers)
    return ReporterRuntime(settings, reporter)


@lru_cache(maxsize=1)
def get_runtime() -> ReporterRuntime:
    settings = ReporterSettings.from_env()
    logger.setLevel(settings.log_level)
    return build_runtime(settings, clients.get_boto_clients())


@metrics.log_metrics
@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    records = list(iter_sqs_records(event))
    logger.info(
        "Starting metering processor job.",
        extra={"recordCount": len(records), "remaining_ms": context.get_remaining_time_in_millis()},
    )

    try:
        runtime = get_runtime()
    except Exception:
        logger.exception("Fatal error in metering processor job.")
        raise

    metrics.add_dimension(name="environment", value=runtime.settings.environment)
    summary = runtime.reporter.process(records)

    metrics.add_metric(name="RecordsMetered", unit=MetricUnit.Count, value=summary.completed)
    metrics.add_metric(name="RecordsRejected", unit=MetricUnit.Count, value=summary.failed)
    metrics.add_metric(name="MessagesRetried", unit=MetricUnit.Count, value=len(summary.retry_message_ids))
    logger.info(
        "Metering processor job completed.",
        extra={
            "totalProcessed": summary.total,
            "successCount": summary.completed,
            "errorCount": summary.failed,
            "retryCount": len(summary.retry_message_ids),
        },
    )
    return summary.batch_response()
