"""goal.live configuration: env-driven settings with a YAML overlay."""

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class LedgerConfig(BaseModel):
    """Storage backend selection and operational limits."""

    backend: Literal["memory", "database"] = "memory"
    database_url: str = "sqlite+aiosqlite:///data/goallive.db"
    operation_timeout_seconds: float = 5.0
    max_conflict_retries: int = 5
    max_settlement_attempts: int = 3
    echo_sql: bool = False


class PenaltyConfig(BaseModel):
    """Bet-change penalty schedule."""

    # index 0 = first change
    base_rates: list[Decimal] = Field(
        default_factory=lambda: [
            Decimal("0.03"),
            Decimal("0.05"),
            Decimal("0.08"),
            Decimal("0.12"),
            Decimal("0.15"),
        ]
    )
    full_time_minute: int = 90

    @field_validator("base_rates")
    @classmethod
    def validate_base_rates(cls, v: list[Decimal]) -> list[Decimal]:
        """Rates must be a non-empty list of fractions in [0, 1]."""
        if not v:
            raise ValueError("base_rates cannot be empty")
        for rate in v:
            if rate < 0 or rate > 1:
                raise ValueError(f"Penalty rate out of range: {rate}")
        return v


class CustodyConfig(BaseModel):
    """Funds-custody service connection parameters."""

    paper_mode: bool = True
    base_url: str = "http://localhost:8080/custody/v1"
    api_key: str = ""
    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    max_delivery_attempts: int = 10
    flush_interval_seconds: float = 5.0


class ApiConfig(BaseModel):
    """HTTP surface parameters."""

    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173"]
    )


CONFIG_SECTIONS = ("ledger", "penalty", "custody", "api")


class Settings(BaseSettings):
    """goal.live settings from env vars, .env, and the optional YAML overlay."""

    # Paths
    data_dir: Path = Path("data")

    environment: str = "development"
    log_level: str = "INFO"
    logfire_token: str = ""

    # Nested configuration sections
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    penalty: PenaltyConfig = Field(default_factory=PenaltyConfig)
    custody: CustodyConfig = Field(default_factory=CustodyConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("data_dir", mode="after")
    @classmethod
    def resolve_data_dir(cls, v: Path) -> Path:
        """Resolve data directory to absolute path."""
        return v.resolve()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def load_yaml_config(self) -> None:
        """Overlay data_dir/config.yaml on top of env-derived sections."""
        overlay_path = self.data_dir / "config.yaml"

        if not overlay_path.exists():
            logger.debug(f"No overlay at {overlay_path}, keeping env/defaults")
            return

        try:
            overlay = yaml.safe_load(overlay_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {overlay_path}: {e}")
            raise

        if not overlay:
            logger.warning(f"Overlay {overlay_path} is empty")
            return

        for name in CONFIG_SECTIONS:
            values = overlay.get(name)
            if not values:
                continue
            current = getattr(self, name)
            merged = {**current.model_dump(), **values}
            setattr(self, name, type(current).model_validate(merged))

        logger.info(f"Applied config overlay {overlay_path}")


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings: environment first, then the YAML overlay."""
    settings = Settings()
    settings.load_yaml_config()
    return settings
