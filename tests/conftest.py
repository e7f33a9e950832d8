import threading
from dataclasses import dataclass
from typing import Optional

import boto3
import pytest
from aws_lambda_powertools import Logger
from moto import mock_aws

from metering_pipeline.store import UsageRecordStore

REGION = "us-east-1"
TABLE_NAME = "MeteringRecords"
INDEX_NAME = "PendingMeteringRecordsIndex"
QUEUE_NAME = "metering-records.fifo"
NOW_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class SerializedTable:
    """
    Table proxy for racing writers: the first `racers` update_item calls wait for
    each other, then every update runs one at a time as DynamoDB does per item.
    """

    def __init__(self, table, racers=2):
        self._table = table
        self._barrier = threading.Barrier(racers, timeout=10)
        self._remaining = racers
        self._lock = threading.Lock()

    def __getattr__(self, name):
        return getattr(self._table, name)

    def update_item(self, **kwargs):
        with self._lock:
            racing = self._remaining > 0
            self._remaining -= 1
        if racing:
            self._barrier.wait()
        with self._lock:
            return self._table.update_item(**kwargs)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("USE_MOTO", "1")


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield


@pytest.fixture
def table(mocked_aws):
    dynamodb = boto3.resource("dynamodb", region_name=REGION)
    return dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "customerIdentifier", "KeyType": "HASH"},
            {"AttributeName": "create_timestamp", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "customerIdentifier", "AttributeType": "S"},
            {"AttributeName": "create_timestamp", "AttributeType": "N"},
            {"AttributeName": "metering_pending", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": INDEX_NAME,
                "KeySchema": [{"AttributeName": "metering_pending", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def sqs_client(mocked_aws):
    return boto3.client("sqs", region_name=REGION)


@pytest.fixture
def queue_url(sqs_client):
    return sqs_client.create_queue(QueueName=QUEUE_NAME, Attributes={"FifoQueue": "true"})["QueueUrl"]


@pytest.fixture
def store(table):
    return UsageRecordStore(table, INDEX_NAME)


@pytest.fixture
def logger():
    return Logger(service="metering-tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lambda_context():
    @dataclass
    class LambdaContext:
        function_name: str = "metering-test"
        memory_limit_in_mb: int = 128
        invoked_function_arn: str = "arn:aws:lambda:us-east-1:123456789012:function:metering-test"
        aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"
        remaining_ms: int = 300_000
        tenant_id: Optional[str] = None

        def get_remaining_time_in_millis(self) -> int:
            return self.remaining_ms

    return LambdaContext()


def put_record(table, customer="cust-1", created=1000, pending="true", **extra):
    item = {
        "customerIdentifier": customer,
        "create_timestamp": created,
        "metering_pending": pending,
        "dimension": "api-calls",
        "quantity": 5,
    }
    item.update(extra)
    item = {k: v for k, v in item.items() if v is not None}
    table.put_item(Item=item)
    return item


def get_record(table, customer="cust-1", created=1000):
    return table.get_item(Key={"customerIdentifier": customer, "create_timestamp": created}).get("Item")


def receive_all(sqs_client, queue_url):
    messages = []
    while True:
        batch = sqs_client.receive_message(
            QueueUrl=queue_url, MaxNumberOfMessages=10, AttributeNames=["All"], MessageAttributeNames=["All"]
        ).get("Messages", [])
        if not batch:
            return messages
        messages.extend(batch)
        for m in batch:
            sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=m["ReceiptHandle"])
