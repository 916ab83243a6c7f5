"""Configuration settings for the Cadence billing engine.

Wraps environment variables and provides defaults.
"""

from typing import Optional

from pydantic import PostgresDsn, ValidationInfo, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class.

    Attributes:
    ----------
        PROJECT_NAME (str): The name of the project.
        LOCAL_DEVELOPMENT (bool): Whether the application is running locally.
        ENVIRONMENT (str): The deployment environment (local, dev, test, prod).
        LOG_LEVEL (str): The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        POSTGRES_HOST (str): The PostgreSQL server hostname.
        POSTGRES_DB (str): The PostgreSQL database name.
        POSTGRES_USER (str): The PostgreSQL username.
        POSTGRES_PASSWORD (str): The PostgreSQL password.
        SQLALCHEMY_ASYNC_DATABASE_URI (Optional[str]): The SQLAlchemy async database URI.
        REDIS_HOST (str): The Redis server hostname.
        REDIS_PORT (int): The Redis server port.
        REDIS_PASSWORD (Optional[str]): The Redis password (if authentication is enabled).
        REDIS_DB (int): The Redis database number.
        USAGE_CACHE_BACKEND (str): Backend for usage aggregates ("memory" or "redis").
        USAGE_CACHE_TTL_SECONDS (int): How long a cached usage aggregate stays valid.
        STRIPE_ENABLED (bool): Whether Stripe is used as the payment processor.
        STRIPE_SECRET_KEY (Optional[str]): The Stripe API key.
        BILLING_CURRENCY (str): ISO currency code charged by the processor.
        PAYMENT_TIMEOUT_SECONDS (float): Timeout for one payment processor call.
        BILLING_SWEEP_SCHEDULE (str): Cron expression for the renewal sweep.
        DUNNING_SCHEDULE (str): Cron expression for the dunning run.
        SCHEDULER_CHECK_INTERVAL (float): Seconds between scheduler polls.
        BILLING_SWEEP_CONCURRENCY (int): Max subscriptions processed at once per run.
        BILLING_MAX_RETRIES (int): Dunning retries before a subscription is suspended.
        BILLING_INITIAL_RETRY_HOURS (int): Delay before the first dunning retry.
        BILLING_DUE_DAYS (int): Days between billing a record and its due date.
        PRORATION_PERIOD_DAYS (int): Period length assumed by proration.
        USAGE_NEAR_LIMIT_PERCENT (float): Usage percentage flagged as near the limit.
        DUNNING_RETRY_PERMANENT_FAILURES (bool): Whether non-retryable declines still
            go through the full dunning schedule.
    """

    PROJECT_NAME: str = "Cadence"
    LOCAL_DEVELOPMENT: bool = False
    ENVIRONMENT: str = "local"

    # Logging configuration
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "localhost"
    POSTGRES_DB: str = "cadence"
    POSTGRES_USER: str = "cadence"
    POSTGRES_PASSWORD: str = ""
    SQLALCHEMY_ASYNC_DATABASE_URI: Optional[str] = None

    # Redis configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    USAGE_CACHE_BACKEND: str = "memory"
    USAGE_CACHE_TTL_SECONDS: int = 300

    # Payment processor
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: Optional[str] = None
    BILLING_CURRENCY: str = "usd"
    PAYMENT_TIMEOUT_SECONDS: float = 30.0

    # Scheduling
    BILLING_SWEEP_SCHEDULE: str = "0 1 * * *"  # Daily at 1 AM
    DUNNING_SCHEDULE: str = "0 */6 * * *"  # Every 6 hours
    SCHEDULER_CHECK_INTERVAL: float = 60.0
    BILLING_SWEEP_CONCURRENCY: int = 1

    # Billing policy
    BILLING_MAX_RETRIES: int = 3
    BILLING_INITIAL_RETRY_HOURS: int = 2
    BILLING_DUE_DAYS: int = 7
    PRORATION_PERIOD_DAYS: int = 30
    USAGE_NEAR_LIMIT_PERCENT: float = 80.0
    DUNNING_RETRY_PERMANENT_FAILURES: bool = True

    @field_validator("USAGE_CACHE_BACKEND", mode="before")
    def validate_cache_backend(cls, v: str) -> str:
        """Normalize and validate the usage cache backend name.

        Args:
            v: The configured backend name.

        Returns:
            str: The lower-cased backend name.

        Raises:
            ValueError: If the backend is not supported.
        """
        backend = (v or "memory").strip().lower()
        if backend not in {"memory", "redis"}:
            raise ValueError(f"Unsupported USAGE_CACHE_BACKEND: {v}")
        return backend

    @field_validator("BILLING_SWEEP_SCHEDULE", "DUNNING_SCHEDULE", mode="after")
    def validate_schedule(cls, v: str, info: ValidationInfo) -> str:
        """Reject cron expressions croniter cannot parse."""
        from croniter import croniter

        if not croniter.is_valid(v):
            raise ValueError(f"{info.field_name} is not a valid cron expression: {v}")
        return v

    @field_validator(
        "BILLING_MAX_RETRIES",
        "BILLING_SWEEP_CONCURRENCY",
        "PRORATION_PERIOD_DAYS",
        mode="after",
    )
    def validate_positive(cls, v: int, info: ValidationInfo) -> int:
        """Ensure counters that size loops and divisions are positive."""
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("STRIPE_SECRET_KEY", mode="after")
    def validate_stripe_settings(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        """Require a secret key when Stripe is enabled.

        Args:
        ----
            v (Optional[str]): The Stripe secret key.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            Optional[str]: The validated key.

        Raises:
        ------
            ValueError: If STRIPE_ENABLED is True and the key is empty.
        """
        if info.data.get("STRIPE_ENABLED", False) and not v:
            raise ValueError("STRIPE_SECRET_KEY must be set when STRIPE_ENABLED is True")
        return v

    @field_validator("SQLALCHEMY_ASYNC_DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], info: ValidationInfo) -> str:
        """Build the SQLAlchemy database URI.

        Args:
        ----
            v (Optional[str]): The value of the SQLALCHEMY_ASYNC_DATABASE_URI setting.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            str: The assembled SQLAlchemy async database URI.

        """
        if isinstance(v, str):
            return v

        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=info.data.get("POSTGRES_USER"),
                password=info.data.get("POSTGRES_PASSWORD") or None,
                host=info.data.get("POSTGRES_HOST", "localhost"),
                path=f"{info.data.get('POSTGRES_DB') or ''}",
            )
        )

    @property
    def redis_url(self) -> str:
        """The Redis URL.

        Returns:
            str: The Redis URL without credentials.
        """
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
