"""Configuration for IL Guardian service."""

from decimal import Decimal
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """IL Guardian configuration."""

    # Database - position records (PostgreSQL)
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    db_user: str = Field(default="guardian", alias="DB_USER")
    db_password: str = Field(default="guardian", alias="DB_PASSWORD")
    db_name: str = Field(default="il_guardian", alias="DB_NAME")

    # Redis - pool reserve snapshots published by the market data sync
    redis_host: str = Field(default="redis", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_reserves_key: str = Field(default="pools:reserves", alias="REDIS_RESERVES_KEY")
    reserves_staleness_minutes: int = Field(default=15, alias="RESERVES_STALENESS_MINUTES")

    # Ledger gateway - withdrawal submission
    ledger_api_url: str = Field(default="http://ledger-gateway:8000", alias="LEDGER_API_URL")
    ledger_api_key: Optional[str] = Field(default=None, alias="LEDGER_API_KEY")
    ledger_timeout_seconds: float = Field(default=10.0, alias="LEDGER_TIMEOUT_SECONDS")
    ledger_await_confirmation: bool = Field(default=True, alias="LEDGER_AWAIT_CONFIRMATION")
    ledger_confirmation_timeout_seconds: float = Field(default=120.0, alias="LEDGER_CONFIRMATION_TIMEOUT_SECONDS")
    ledger_poll_interval_seconds: float = Field(default=5.0, alias="LEDGER_POLL_INTERVAL_SECONDS")

    # Monitoring
    check_interval_seconds: float = Field(default=60, alias="CHECK_INTERVAL_SECONDS")
    error_backoff_seconds: float = Field(default=10, alias="ERROR_BACKOFF_SECONDS")
    max_workers: int = Field(default=8, alias="MAX_WORKERS")
    monitored_pools: str = Field(default="", alias="MONITORED_POOLS")
    default_max_il_bps: int = Field(default=500, alias="DEFAULT_MAX_IL_BPS")  # 5%

    # Protection
    max_exit_pct: Decimal = Field(default=Decimal("30"), alias="MAX_EXIT_PCT")
    exit_divisor: Decimal = Field(default=Decimal("10"), alias="EXIT_DIVISOR")

    # Telegram - routine alerts
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHAT_ID")

    # Twilio - escalation after repeated protection failures
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_phone_number: Optional[str] = Field(default=None, alias="TWILIO_PHONE_NUMBER")
    alert_phone_number: str = Field(default="", alias="ALERT_PHONE_NUMBER")
    sms_escalation_failures: int = Field(default=3, alias="SMS_ESCALATION_FAILURES")

    # Health endpoint
    health_port: int = Field(default=8080, alias="HEALTH_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def monitored_pool_ids(self) -> List[str]:
        return [p.strip() for p in self.monitored_pools.split(",") if p.strip()]

    @property
    def twilio_enabled(self) -> bool:
        return all([self.twilio_account_sid, self.twilio_auth_token, self.twilio_phone_number, self.alert_phone_number])

    @property
    def telegram_enabled(self) -> bool:
        return all([self.telegram_bot_token, self.telegram_chat_id])

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


settings = Settings()
