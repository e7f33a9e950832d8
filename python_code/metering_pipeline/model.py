"""
Data models for the SaaS Metering Pipeline.

This module defines the core data structures passed between the scanner, the
delivery queue and the billing reporter. Using enums, dataclasses and TypedDicts
keeps the record lifecycle explicit: every place that changes
`metering_pending` goes through `MeteringPending` rather than bare strings.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypedDict

# --- Store attribute names (the table's wire contract) ---
ATTR_CUSTOMER = "customerIdentifier"
ATTR_CREATED = "create_timestamp"
ATTR_PENDING = "metering_pending"
ATTR_STATUS = "status"
ATTR_DIMENSION = "dimension"
ATTR_QUANTITY = "quantity"
ATTR_STARTED = "processing_started"
ATTR_PROCESSED = "processed_timestamp"
ATTR_RETRY_COUNT = "retry_count"
ATTR_ERROR = "error_message"
ATTR_LAST_FAILED = "last_failed"

RecordKey = Tuple[str, int]


class MeteringPending(str, Enum):
    """Lifecycle marker stored in `metering_pending`; the pending index is keyed on it."""

    PENDING = "true"
    PROCESSING = "processing"
    COMPLETED = "false"

    @classmethod
    def parse(cls, raw: Any) -> "MeteringPending":
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown metering_pending value: {raw!r}") from None


class RecordStatus(str, Enum):
    """Diagnostic status, independent of `MeteringPending`."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT_RESET = "timeout_reset"

    @classmethod
    def parse(cls, raw: Any) -> Optional["RecordStatus"]:
        """Returns None for a missing or unrecognised status; the field is diagnostic only."""
        try:
            return cls(raw) if raw else None
        except ValueError:
            return None


def can_transition(src: MeteringPending, dst: MeteringPending) -> bool:
    """
    Returns whether `metering_pending` may move from `src` to `dst`.

    Every record passes through PROCESSING; COMPLETED is terminal. PROCESSING
    may fall back to PENDING (rollback or timeout reset).
    """
    if src is MeteringPending.PENDING:
        return dst is MeteringPending.PROCESSING
    if src is MeteringPending.PROCESSING:
        return dst in (MeteringPending.PENDING, MeteringPending.COMPLETED)
    if src is MeteringPending.COMPLETED:
        return False
    raise AssertionError(f"Unhandled metering state: {src!r}")


def to_json_safe(value: Any) -> Any:
    """Converts DynamoDB `Decimal` values (recursively) into plain ints and floats."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_safe(v) for v in value]
    return value


@dataclass
class UsageRecord:
    """
    One billable event as stored in the usage record table.

    Attributes:
        customer_identifier: Partition key; the marketplace customer.
        create_timestamp: Range key; event time in epoch milliseconds.
        metering_pending: Lifecycle marker.
        dimension: Billing dimension name.
        quantity: Usage amount.
        status: Diagnostic status, if one has been written.
        processing_started: Epoch ms of the current claim.
        retry_count: Number of recorded failures.
        raw: The JSON-safe item, forwarded as `originalRecord`.
    """

    customer_identifier: str
    create_timestamp: int
    metering_pending: MeteringPending
    dimension: Optional[str] = None
    quantity: Optional[float] = None
    status: Optional[RecordStatus] = None
    processing_started: Optional[int] = None
    retry_count: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "UsageRecord":
        data = to_json_safe(dict(item))
        return cls(
            customer_identifier=data[ATTR_CUSTOMER],
            create_timestamp=int(data[ATTR_CREATED]),
            metering_pending=MeteringPending.parse(data[ATTR_PENDING]),
            dimension=data.get(ATTR_DIMENSION),
            quantity=data.get(ATTR_QUANTITY),
            status=RecordStatus.parse(data.get(ATTR_STATUS)),
            processing_started=data.get(ATTR_STARTED),
            retry_count=int(data.get(ATTR_RETRY_COUNT, 0)),
            raw=data,
        )

    @property
    def key(self) -> RecordKey:
        return (self.customer_identifier, self.create_timestamp)

    @property
    def effective_pending(self) -> MeteringPending:
        # A claim without a start time cannot be aged, so it counts as pending.
        if self.metering_pending is MeteringPending.PROCESSING and self.processing_started is None:
            return MeteringPending.PENDING
        return self.metering_pending


@dataclass
class MeteringMessage:
    """The Delivery Queue payload for one usage record."""

    customer_identifier: Optional[str]
    timestamp: Optional[int]
    dimension: Optional[str]
    quantity: Any
    original_record: Dict[str, Any]

    @classmethod
    def from_record(cls, record: UsageRecord) -> "MeteringMessage":
        return cls(
            customer_identifier=record.customer_identifier,
            timestamp=record.create_timestamp,
            dimension=record.dimension,
            quantity=record.quantity,
            original_record=record.raw,
        )

    @classmethod
    def from_json(cls, body: str) -> "MeteringMessage":
        """
        Decodes a message body.

        Raises:
            ValueError: If the body is not a JSON object or has no `originalRecord`
                        identifying the stored record.
        """
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("Message body is not a JSON object.")
        original = data.get("originalRecord")
        if not isinstance(original, dict) or ATTR_CUSTOMER not in original or ATTR_CREATED not in original:
            raise ValueError("Message body has no usable originalRecord.")
        return cls(
            customer_identifier=data.get("customerIdentifier"),
            timestamp=data.get("timestamp"),
            dimension=data.get("dimension"),
            quantity=data.get("quantity"),
            original_record=original,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "customerIdentifier": self.customer_identifier,
                "timestamp": self.timestamp,
                "dimension": self.dimension,
                "quantity": self.quantity,
                "originalRecord": self.original_record,
            }
        )

    @property
    def record_key(self) -> RecordKey:
        return (self.original_record[ATTR_CUSTOMER], int(self.original_record[ATTR_CREATED]))


class SQSEventRecord(TypedDict):
    """
    The structure of a single SQS message record from a Lambda event.

    Only the attributes this application reads are declared.
    """

    messageId: str
    receiptHandle: str
    body: str


@dataclass
class BatchResult:
    """Outcome counts for one scanner batch."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ScanSummary:
    """Aggregate counts for one scanner invocation."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    iterations: int = 0
    errors: List[str] = field(default_factory=list)

    def add(self, batch: BatchResult) -> None:
        self.attempted += batch.attempted
        self.succeeded += batch.succeeded
        self.failed += batch.failed
        self.skipped += batch.skipped
        self.errors.extend(batch.errors)


@dataclass
class ReportSummary:
    """
    Outcome of one reporter invocation.

    Attributes:
        total: Number of queue messages received.
        completed: Records the billing API accepted (duplicates included).
        failed: Records marked failed (validation, rejection or exhausted retries).
        retry_message_ids: Messages to leave on the queue for redelivery.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    retry_message_ids: List[str] = field(default_factory=list)

    def batch_response(self) -> Dict[str, List[Dict[str, str]]]:
        """The SQS partial-batch response understood by the Lambda event source mapping."""
        return {"batchItemFailures": [{"itemIdentifier": mid} for mid in self.retry_message_ids]}
