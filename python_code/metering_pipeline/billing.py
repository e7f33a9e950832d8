"""
Client for the AWS Marketplace Metering `BatchMeterUsage` API.

Translates the SDK response into per-record outcomes keyed by correlation key,
and SDK errors into this package's exception types: throttling becomes
`ThrottlingError` (retryable), everything else `BillingApiError`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

from botocore.exceptions import ClientError
from mypy_boto3_meteringmarketplace import MarketplaceMeteringClient

from .exceptions import BillingApiError, ThrottlingError
from .retry import THROTTLING_ERROR_CODES

MAX_BATCH_SIZE = 25
ACCEPTED_STATUSES = frozenset({"Success", "DuplicateRecord"})
UNPROCESSED_CODE = "UnprocessedRecord"


def format_timestamp(ts: datetime) -> str:
    """Millisecond-precision UTC ISO-8601, e.g. `2024-01-01T00:00:01.000Z`."""
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def correlation_key(customer_identifier: str, dimension: str, timestamp: datetime) -> str:
    return f"{customer_identifier}::{dimension}::{format_timestamp(timestamp)}"


@dataclass(frozen=True)
class BillingUsage:
    customer_identifier: str
    dimension: str
    quantity: int
    timestamp: datetime

    @classmethod
    def from_epoch_ms(cls, customer_identifier: str, dimension: str, quantity: int, timestamp_ms: int) -> "BillingUsage":
        return cls(
            customer_identifier=customer_identifier,
            dimension=dimension,
            quantity=quantity,
            timestamp=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc),
        )

    @property
    def correlation_key(self) -> str:
        return correlation_key(self.customer_identifier, self.dimension, self.timestamp)

    def to_request(self) -> Dict[str, Any]:
        return {
            "Timestamp": self.timestamp,
            "CustomerIdentifier": self.customer_identifier,
            "Dimension": self.dimension,
            "Quantity": self.quantity,
        }


@dataclass
class UnprocessedUsage:
    correlation_key: str
    error_code: str
    error_message: str


@dataclass
class BillingResponse:
    accepted: List[str] = field(default_factory=list)
    unprocessed: List[UnprocessedUsage] = field(default_factory=list)


def _key_from_response(usage: Mapping[str, Any]) -> str:
    return correlation_key(usage["CustomerIdentifier"], usage["Dimension"], usage["Timestamp"])


class MarketplaceBillingClient:
    """
    Args:
        client: The boto3 `meteringmarketplace` client.
        product_code: The marketplace product code the usage is billed against.
    """

    def __init__(self, client: MarketplaceMeteringClient, product_code: str):
        self._client = client
        self._product_code = product_code

    def submit_batch(self, usages: List[BillingUsage]) -> BillingResponse:
        """
        Submits up to 25 usage records in one request.

        A submitted record is accepted unless the response reports it unprocessed
        or with a status other than `Success` / `DuplicateRecord`.

        Raises:
            ThrottlingError: The whole request was rate limited.
            BillingApiError: The request was rejected for any other reason.
        """
        if len(usages) > MAX_BATCH_SIZE:
            raise ValueError(f"BatchMeterUsage accepts at most {MAX_BATCH_SIZE} records, got {len(usages)}.")

        try:
            response = self._client.batch_meter_usage(
                UsageRecords=[u.to_request() for u in usages],
                ProductCode=self._product_code,
            )
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(e))
            if code in THROTTLING_ERROR_CODES:
                raise ThrottlingError(f"{code}: {message}") from e
            raise BillingApiError(code, message) from e

        unprocessed: Dict[str, UnprocessedUsage] = {}
        for result in response.get("Results", []):
            status = result.get("Status")
            if status in ACCEPTED_STATUSES:
                continue
            key = _key_from_response(result["UsageRecord"])
            unprocessed[key] = UnprocessedUsage(key, status or "Unknown", f"Usage record returned with status {status}")
        for usage in response.get("UnprocessedRecords", []):
            key = _key_from_response(usage)
            unprocessed[key] = UnprocessedUsage(key, UNPROCESSED_CODE, "Usage record was not processed by the billing API")

        submitted = [u.correlation_key for u in usages]
        return BillingResponse(
            accepted=[k for k in submitted if k not in unprocessed],
            unprocessed=[unprocessed[k] for k in submitted if k in unprocessed],
        )
