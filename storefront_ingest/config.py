"""
Configuration module for the storefront ingestion pipeline.

Reads environment variables and provides configuration values for the
Postgres connection, the configured storefronts, pagination limits,
backfill settings and alerting.
"""

import json
import os
from pathlib import Path
from typing import Optional, Dict, Any

from dotenv import load_dotenv

from storefront_ingest.errors import ConfigurationError


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    """
    Loads environment variables from a .env file if it exists and not running in AWS.

    Existing environment variables are never overwritten.

    Args:
        dotenv_path (Path): Path to the .env file.
    """
    for aws_indicator in (
        "AWS_EXECUTION_ENV",
        "AWS_LAMBDA_FUNCTION_NAME",
        "ECS_CONTAINER_METADATA_URI",
    ):
        if os.getenv(aws_indicator):
            return
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)


env_path = Path(__file__).parent.parent / ".env"
_load_dotenv_if_present(env_path)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def clamp(value: Any, low: int, high: int, default: int) -> int:
    """
    Coerce a value to int and clamp it into [low, high].

    Args:
        value: Raw value (string from a query string, int, or None)
        low: Lowest accepted value
        high: Highest accepted value
        default: Value used when the input is missing or not a number

    Returns:
        int: Clamped value
    """
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    return min(max(number, low), high)


class Config:
    """
    Configuration class that reads environment variables for the ingestion pipeline.
    """

    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DB_SECRET_ARN: str = os.getenv("DB_SECRET_ARN", "")
    DB_POOL_MIN: int = _env_int("DB_POOL_MIN", 1)
    DB_POOL_MAX: int = _env_int("DB_POOL_MAX", 4)
    DB_CONNECT_TIMEOUT: int = _env_int("DB_CONNECT_TIMEOUT", 10)

    # Storefront Configuration
    SHOPIFY_STORES: str = os.getenv("SHOPIFY_STORES", "")
    SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2024-07")
    CHANNEL_NAME: str = "shopify"
    HTTP_TIMEOUT_SECONDS: int = _env_int("HTTP_TIMEOUT_SECONDS", 30)

    # Pagination Configuration
    PAGE_SIZE: int = clamp(os.getenv("PAGE_SIZE"), 1, 250, 100)
    MAX_PAGES_PER_RUN: int = clamp(os.getenv("MAX_PAGES_PER_RUN"), 1, 50, 10)
    DEFAULT_DAYS: int = clamp(os.getenv("DEFAULT_DAYS"), 1, 365, 90)
    MAX_DAYS: int = 365

    # Backfill Configuration
    BACKFILL_DAYS: int = clamp(os.getenv("BACKFILL_DAYS"), 1, 365, 365)
    BACKFILL_MAX_ITERATIONS: int = _env_int("BACKFILL_MAX_ITERATIONS", 200)
    BACKFILL_TOKEN: str = os.getenv("BACKFILL_TOKEN", "")

    # Concurrency Configuration
    CLAIM_TTL_SECONDS: int = _env_int("CLAIM_TTL_SECONDS", 600)

    # Transform Configuration
    TRANSFORM_BATCH_SIZE: int = _env_int("TRANSFORM_BATCH_SIZE", 2000)
    TRANSFORM_OVERLAP_SECONDS: int = _env_int("TRANSFORM_OVERLAP_SECONDS", 300)
    TRANSFORM_AFTER_INGEST: bool = _env_bool("TRANSFORM_AFTER_INGEST", True)

    # Alerting Configuration
    SENDGRID_API_KEY: str = os.getenv("SENDGRID_API_KEY", "")
    ALERT_EMAIL_FROM: str = os.getenv("ALERT_EMAIL_FROM", "")
    ALERT_EMAIL_TO: str = os.getenv("ALERT_EMAIL_TO", "")

    # Lazy-loaded secret cache
    _db_secret_cache: Dict[str, Any] = {}

    @classmethod
    def _load_db_secret(cls) -> Dict[str, Any]:
        """
        Retrieve and cache the database secret from AWS Secrets Manager.

        Returns:
            Dict containing the secret payload.
        """
        if not cls._db_secret_cache:
            if not cls.DB_SECRET_ARN:
                raise ConfigurationError("DB_SECRET_ARN environment variable is required")

            import boto3
            from botocore.exceptions import BotoCoreError, ClientError

            secrets_client = boto3.client("secretsmanager")
            try:
                response = secrets_client.get_secret_value(SecretId=cls.DB_SECRET_ARN)
                cls._db_secret_cache = json.loads(response["SecretString"])
            except (BotoCoreError, ClientError, ValueError) as e:
                raise ConfigurationError(
                    f"Failed to retrieve database secret from Secrets Manager: {e}"
                )
        return cls._db_secret_cache

    @classmethod
    def get_db_connection_details(cls) -> Dict[str, Any]:
        """
        Provide psycopg2 connection keyword arguments.

        DATABASE_URL wins when set; otherwise the details come from the
        Secrets Manager secret referenced by DB_SECRET_ARN.

        Returns:
            Dict of keyword arguments for psycopg2.connect / the pool.
        """
        if cls.DATABASE_URL:
            if not cls.DATABASE_URL.startswith("postgres"):
                raise ConfigurationError("DATABASE_URL must be a postgresql:// URL")
            return {"dsn": cls.DATABASE_URL, "connect_timeout": cls.DB_CONNECT_TIMEOUT}

        secret = cls._load_db_secret()

        required_keys = ["host", "port", "username", "password"]
        missing_keys = [key for key in required_keys if key not in secret]
        if missing_keys:
            raise ConfigurationError(
                f"Database secret missing required keys: {', '.join(missing_keys)}"
            )

        database_name = secret.get("dbname") or secret.get("database")
        if not database_name:
            raise ConfigurationError("Database secret must include either 'dbname' or 'database'")

        return {
            "host": secret["host"],
            "port": int(secret["port"]),
            "dbname": database_name,
            "user": secret["username"],
            "password": secret["password"],
            "connect_timeout": cls.DB_CONNECT_TIMEOUT,
        }

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration values are present.

        Raises:
            ConfigurationError: If any required configuration is missing.
        """
        missing = []
        if not cls.DATABASE_URL and not cls.DB_SECRET_ARN:
            missing.append("DATABASE_URL (or DB_SECRET_ARN)")
        if not cls.SHOPIFY_STORES:
            missing.append("SHOPIFY_STORES")
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        if cls.BACKFILL_MAX_ITERATIONS < 1:
            raise ConfigurationError("BACKFILL_MAX_ITERATIONS must be at least 1")

    @classmethod
    def alerting_configured(cls) -> bool:
        """Whether both alert addresses are set."""
        return bool(cls.ALERT_EMAIL_FROM.strip() and cls.ALERT_EMAIL_TO.strip())

    @classmethod
    def orders_url(cls, domain: str) -> str:
        """
        Build the orders-list endpoint for a storefront.

        Args:
            domain: Sanitized shop domain (e.g. 'acme.myshopify.com')

        Returns:
            str: Absolute URL of the orders endpoint
        """
        return f"https://{domain}/admin/api/{cls.SHOPIFY_API_VERSION}/orders.json"

    @classmethod
    def clamp_days(cls, value: Optional[Any], default: Optional[int] = None) -> int:
        """Clamp a days-back window into [1, MAX_DAYS]."""
        return clamp(value, 1, cls.MAX_DAYS, default or cls.DEFAULT_DAYS)
