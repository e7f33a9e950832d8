"""
A factory module for creating and providing boto3 clients.

Handles are created once per process by the Lambda handlers and passed into
each component's constructor. Tests build the same components around clients
created under `moto`, so none of the business logic makes real AWS calls.
"""

import logging
import os
from typing import NamedTuple

import boto3
import botocore.config

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
from mypy_boto3_meteringmarketplace import MarketplaceMeteringClient
from mypy_boto3_sqs import SQSClient

logger = logging.getLogger(__name__)

# Shared retry configuration for every client. Throttling that survives the
# SDK's own adaptive retries is handled by `retry.RetryPolicy`.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 3, "mode": "adaptive"}
)


class AwsClients(NamedTuple):
    dynamodb: DynamoDBServiceResource
    sqs: SQSClient
    metering: MarketplaceMeteringClient


def get_boto_clients() -> AwsClients:
    """
    Returns the AWS service handles used by the pipeline.

    The region is read from the environment so every client resolves to the
    same place. When `USE_MOTO` is set, `moto` is expected to be active and to
    intercept the calls made through these clients.

    Returns:
        An AwsClients tuple of (dynamodb_resource, sqs_client, metering_client).
    """
    aws_region = os.environ.get("AWS_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    dynamodb_resource: DynamoDBServiceResource = boto3.resource(
        "dynamodb", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    sqs_client: SQSClient = boto3.client(
        "sqs", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )
    metering_client: MarketplaceMeteringClient = boto3.client(
        "meteringmarketplace", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE
    )

    return AwsClients(dynamodb_resource, sqs_client, metering_client)
