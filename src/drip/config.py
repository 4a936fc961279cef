"""Configuration management for DRIP using Pydantic Settings."""

from decimal import Decimal
from enum import Enum

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


class DripConfig(BaseSettings):
    """DRIP service configuration loaded from environment variables.

    The transfer amount, cooldown and in-flight ceiling are deployment
    specific and have no defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Network
    rpc_endpoint: str = Field(alias="DRIP_RPC_ENDPOINT")
    chain_id: int | None = Field(default=None, alias="DRIP_CHAIN_ID")
    block_explorer_url: str | None = Field(default=None, alias="DRIP_BLOCK_EXPLORER_URL")

    # Funding account credential
    wallet_private_key: SecretStr | None = Field(default=None, alias="DRIP_WALLET_PRIVATE_KEY")
    wallet_private_key_file: str | None = Field(default=None, alias="DRIP_WALLET_PRIVATE_KEY_FILE")
    wallet_mnemonic: SecretStr | None = Field(default=None, alias="DRIP_WALLET_MNEMONIC")
    wallet_account_index: int = Field(default=0, alias="DRIP_WALLET_ACCOUNT_INDEX", ge=0)

    # Disbursement policy
    transfer_amount: Decimal = Field(alias="DRIP_TRANSFER_AMOUNT", gt=0)
    cooldown_seconds: int = Field(alias="DRIP_COOLDOWN_SECONDS", ge=0)
    max_in_flight: int = Field(alias="DRIP_MAX_IN_FLIGHT", gt=0)
    daily_limit: int | None = Field(default=None, alias="DRIP_DAILY_LIMIT", gt=0)
    health_min_balance: Decimal | None = Field(
        default=None, alias="DRIP_HEALTH_MIN_BALANCE", ge=0
    )

    # Submission
    gas_limit: int = Field(default=21000, alias="DRIP_GAS_LIMIT", gt=0)
    max_attempts: int = Field(default=5, alias="DRIP_MAX_ATTEMPTS", gt=0)
    backoff_base_seconds: float = Field(default=1.0, alias="DRIP_BACKOFF_BASE_SECONDS", ge=0)
    backoff_max_seconds: float = Field(default=30.0, alias="DRIP_BACKOFF_MAX_SECONDS", ge=0)
    fee_bump_percent: int = Field(default=15, alias="DRIP_FEE_BUMP_PERCENT", ge=10)
    rpc_timeout_seconds: float = Field(default=10.0, alias="DRIP_RPC_TIMEOUT_SECONDS", gt=0)
    poll_interval_seconds: float = Field(default=7.0, alias="DRIP_POLL_INTERVAL_SECONDS", gt=0)
    confirmation_timeout_seconds: float = Field(
        default=300.0, alias="DRIP_CONFIRMATION_TIMEOUT_SECONDS", gt=0
    )
    status_requery_limit: int = Field(default=3, alias="DRIP_STATUS_REQUERY_LIMIT", gt=0)

    # Ledger
    ledger_max_age_seconds: float = Field(default=60.0, alias="DRIP_LEDGER_MAX_AGE_SECONDS", gt=0)
    reconcile_interval_seconds: float = Field(
        default=30.0, alias="DRIP_RECONCILE_INTERVAL_SECONDS", gt=0
    )

    # Facade
    client_timeout_seconds: float = Field(default=30.0, alias="DRIP_CLIENT_TIMEOUT_SECONDS", gt=0)
    shutdown_grace_seconds: float = Field(
        default=30.0, alias="DRIP_SHUTDOWN_GRACE_SECONDS", ge=0
    )
    job_archive_size: int = Field(default=1000, alias="DRIP_JOB_ARCHIVE_SIZE", gt=0)
    http_requests_enabled: bool = Field(default=False, alias="DRIP_HTTP_REQUESTS_ENABLED")

    # Slack
    slack_bot_token: SecretStr | None = Field(default=None, alias="SLACK_BOT_TOKEN")
    slack_app_token: SecretStr | None = Field(default=None, alias="SLACK_APP_TOKEN")

    # Redis
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    # Observability
    port: int = Field(default=8111, alias="DRIP_PORT", ge=1, le=65535)
    log_level: str = Field(default="INFO", alias="DRIP_LOG_LEVEL")
    log_format: LogFormat = Field(default=LogFormat.JSON, alias="DRIP_LOG_FORMAT")

    @property
    def min_funding_balance(self) -> Decimal:
        """Balance floor for the health check, in ether units.

        Defaults to twice the transfer amount to leave headroom for gas.
        """
        if self.health_min_balance is not None:
            return self.health_min_balance
        return self.transfer_amount * 2

    @property
    def slack_enabled(self) -> bool:
        """Whether both Slack tokens are configured."""
        return self.slack_bot_token is not None and self.slack_app_token is not None
