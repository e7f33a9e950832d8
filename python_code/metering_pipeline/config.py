"""
Configuration for the metering Lambda functions.

All settings come from environment variables. Required variables are checked
when the settings object is built so that a misconfigured function fails on
its first invocation instead of half-way through a batch.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PENDING_INDEX = "PendingMeteringRecordsIndex"


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None or value == "":
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


@dataclass(frozen=True)
class ScannerSettings:
    table_name: str
    queue_url: str
    index_name: str = DEFAULT_PENDING_INDEX
    max_records: int = 1000
    processing_timeout_minutes: int = 30
    safety_margin_seconds: int = 30
    retry_base_delay_ms: int = 1000
    max_retries: int = 3
    max_workers: int = 10
    environment: str = "dev"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ScannerSettings":
        return cls(
            table_name=get_env_var("AWSMarketplaceMeteringRecordsTableName"),
            queue_url=get_env_var("SQSMeteringRecordsUrl"),
            index_name=get_env_var("PENDING_INDEX_NAME", DEFAULT_PENDING_INDEX),
            max_records=int(get_env_var("MAX_RECORDS_PER_EXECUTION", "1000")),
            processing_timeout_minutes=int(get_env_var("PROCESSING_TIMEOUT_MINUTES", "30")),
            safety_margin_seconds=int(get_env_var("TIME_SAFETY_MARGIN_SECONDS", "30")),
            retry_base_delay_ms=int(get_env_var("RETRY_BASE_DELAY_MS", "1000")),
            max_retries=int(get_env_var("MAX_RETRIES", "3")),
            max_workers=int(get_env_var("MAX_FANOUT_WORKERS", "10")),
            environment=get_env_var("ENVIRONMENT", "dev"),
            log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
        )


@dataclass(frozen=True)
class ReporterSettings:
    table_name: str
    product_code: str
    retry_base_delay_ms: int = 1000
    max_retries: int = 3
    max_workers: int = 10
    environment: str = "dev"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ReporterSettings":
        return cls(
            table_name=get_env_var("AWSMarketplaceMeteringRecordsTableName"),
            product_code=get_env_var("AWS_MARKETPLACE_PRODUCT_CODE"),
            retry_base_delay_ms=int(get_env_var("RETRY_BASE_DELAY_MS", "1000")),
            max_retries=int(get_env_var("MAX_RETRIES", "3")),
            max_workers=int(get_env_var("MAX_FANOUT_WORKERS", "10")),
            environment=get_env_var("ENVIRONMENT", "dev"),
            log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
        )
