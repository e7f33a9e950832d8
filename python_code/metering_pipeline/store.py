"""
Usage Record Store: the DynamoDB table holding one item per usage event.

Every mutation is a conditional update keyed on the state the caller expects
the item to be in. A failed condition is reported to the caller as a normal
outcome, never as an exception; any other DynamoDB error propagates.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_dynamodb.service_resource import Table

from .config import DEFAULT_PENDING_INDEX
from .exceptions import StoreQueryError
from .model import (
    ATTR_CREATED,
    ATTR_CUSTOMER,
    ATTR_ERROR,
    ATTR_LAST_FAILED,
    ATTR_PENDING,
    ATTR_PROCESSED,
    ATTR_RETRY_COUNT,
    ATTR_STARTED,
    ATTR_STATUS,
    MeteringPending,
    RecordKey,
    RecordStatus,
    UsageRecord,
    can_transition,
)

BATCH_SIZE = 25
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

_STATUS_NAMES = {"#status": ATTR_STATUS}


class ClaimOutcome(Enum):
    CLAIMED = "claimed"
    CONFLICT = "conflict"


def _is_condition_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


class UsageRecordStore:
    """
    Wraps the usage record table and its pending index.

    Args:
        table: The boto3 DynamoDB Table resource.
        index_name: The GSI partitioned on `metering_pending`.
        logger: Powertools logger; items that cannot be read as usage records are reported here.
    """

    def __init__(self, table: Table, index_name: str = DEFAULT_PENDING_INDEX, logger: Optional[Logger] = None):
        self._table = table
        self._index_name = index_name
        self._logger = logger

    @staticmethod
    def _key(key: RecordKey) -> Dict[str, Any]:
        customer_identifier, create_timestamp = key
        return {ATTR_CUSTOMER: customer_identifier, ATTR_CREATED: create_timestamp}

    def query(
        self,
        state: MeteringPending,
        page_token: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = BATCH_SIZE,
    ) -> Tuple[List[UsageRecord], Optional[Dict[str, Any]]]:
        """
        Reads one page of records in `state` from the pending index.

        Returns:
            The records on the page and the token for the next page, or None when
            the index is exhausted.

        Raises:
            StoreQueryError: If the query itself fails. Malformed items are skipped.
        """
        kwargs: Dict[str, Any] = {
            "IndexName": self._index_name,
            "KeyConditionExpression": f"{ATTR_PENDING} = :state",
            "ExpressionAttributeValues": {":state": state.value},
        }
        if limit:
            kwargs["Limit"] = limit
        if page_token:
            kwargs["ExclusiveStartKey"] = page_token

        try:
            response = self._table.query(**kwargs)
        except ClientError as e:
            raise StoreQueryError(f"Failed to query {state.value!r} metering records: {e}") from e

        records = []
        for item in response.get("Items", []):
            try:
                records.append(UsageRecord.from_item(item))
            except (KeyError, ValueError, TypeError) as e:
                # One malformed item must not hide the rest of the page.
                if self._logger:
                    self._logger.warning(
                        "Skipping malformed usage record.",
                        extra={"customerIdentifier": item.get(ATTR_CUSTOMER), "error": str(e)},
                    )
        return records, response.get("LastEvaluatedKey")

    def claim(self, record: UsageRecord, now_ms: int) -> ClaimOutcome:
        """Moves a pending record to processing, unless someone else got there first."""
        if not can_transition(record.metering_pending, MeteringPending.PROCESSING):
            return ClaimOutcome.CONFLICT
        try:
            self._table.update_item(
                Key=self._key(record.key),
                UpdateExpression=f"SET {ATTR_PENDING} = :processing, {ATTR_STARTED} = :started, #status = :status",
                ConditionExpression=f"{ATTR_PENDING} = :pending",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":processing": MeteringPending.PROCESSING.value,
                    ":pending": MeteringPending.PENDING.value,
                    ":started": now_ms,
                    ":status": RecordStatus.PROCESSING.value,
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return ClaimOutcome.CONFLICT
            raise
        return ClaimOutcome.CLAIMED

    def rollback(self, record: UsageRecord, error: str, now_ms: int) -> bool:
        """
        Returns a claimed record to pending after its enqueue failed.

        Returns:
            False if the record was no longer in processing.
        """
        try:
            self._table.update_item(
                Key=self._key(record.key),
                UpdateExpression=(
                    f"SET {ATTR_PENDING} = :pending, #status = :failed, {ATTR_ERROR} = :error, "
                    f"{ATTR_LAST_FAILED} = :now REMOVE {ATTR_STARTED} ADD {ATTR_RETRY_COUNT} :inc"
                ),
                ConditionExpression=f"{ATTR_PENDING} = :processing",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":pending": MeteringPending.PENDING.value,
                    ":processing": MeteringPending.PROCESSING.value,
                    ":failed": RecordStatus.FAILED.value,
                    ":error": error,
                    ":now": now_ms,
                    ":inc": 1,
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    def reset_stuck(self, record: UsageRecord) -> bool:
        """Forces an abandoned claim back to pending. Returns False if it was resolved meanwhile."""
        if not can_transition(record.metering_pending, MeteringPending.PENDING):
            return False
        try:
            self._table.update_item(
                Key=self._key(record.key),
                UpdateExpression=f"SET {ATTR_PENDING} = :pending, #status = :timeout REMOVE {ATTR_STARTED}",
                ConditionExpression=f"{ATTR_PENDING} = :processing",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":pending": MeteringPending.PENDING.value,
                    ":processing": MeteringPending.PROCESSING.value,
                    ":timeout": RecordStatus.TIMEOUT_RESET.value,
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    def mark_completed(self, key: RecordKey, now_ms: int) -> bool:
        """Marks a record as billed. Returns False if the record does not exist."""
        try:
            self._table.update_item(
                Key=self._key(key),
                UpdateExpression=(
                    f"SET {ATTR_PENDING} = :completed, {ATTR_PROCESSED} = :now, #status = :status "
                    f"REMOVE {ATTR_STARTED}"
                ),
                ConditionExpression=f"attribute_exists({ATTR_CUSTOMER})",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":completed": MeteringPending.COMPLETED.value,
                    ":now": now_ms,
                    ":status": RecordStatus.COMPLETED.value,
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True

    def mark_failed(self, key: RecordKey, error: str, now_ms: int) -> bool:
        """
        Records a failure without returning the record to pending.

        Returns:
            False if the record does not exist or has already been completed.
        """
        try:
            self._table.update_item(
                Key=self._key(key),
                UpdateExpression=(
                    f"SET #status = :failed, {ATTR_ERROR} = :error, {ATTR_LAST_FAILED} = :now "
                    f"ADD {ATTR_RETRY_COUNT} :inc"
                ),
                ConditionExpression=f"attribute_exists({ATTR_CUSTOMER}) AND {ATTR_PENDING} <> :completed",
                ExpressionAttributeNames=_STATUS_NAMES,
                ExpressionAttributeValues={
                    ":failed": RecordStatus.FAILED.value,
                    ":error": error or "Unknown error",
                    ":now": now_ms,
                    ":inc": 1,
                    ":completed": MeteringPending.COMPLETED.value,
                },
            )
        except ClientError as e:
            if _is_condition_failure(e):
                return False
            raise
        return True
