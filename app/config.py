"""
Calibra — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Calibra calibration engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or a plain DSN
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "calibra_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "calibra"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = False

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Closing protocol
    # ------------------------------------------------------------------ #
    CFO_VARIANCE_THRESHOLD_PCT: float = 5.0
    CLOSE_CONFIRMATION_LITERAL: str = "CONFIRMAR"
    REQUIRE_BUDGET_AUTHORIZATION: bool = True

    # ------------------------------------------------------------------ #
    # Adjustment ledger
    # ------------------------------------------------------------------ #
    MIN_JUSTIFICATION_LENGTH: int = 10
    FORCED_DISTRIBUTION_TOLERANCE_PCT: float = 5.0

    # ------------------------------------------------------------------ #
    # Bonus multipliers per nine-box status group
    # ------------------------------------------------------------------ #
    BONUS_FACTORS: Dict[str, float] = {
        "STARS": 1.5,
        "HIGH": 1.25,
        "CORE": 1.0,
        "NEUTRAL": 0.85,
        "RISK": 0.0,
    }

    # ------------------------------------------------------------------ #
    # Operator CLI
    # ------------------------------------------------------------------ #
    API_BASE_URL: str = "http://localhost:8000/api/v1"
    API_CLIENT_TIMEOUT_SECONDS: float = 30.0

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("CFO_VARIANCE_THRESHOLD_PCT", "FORCED_DISTRIBUTION_TOLERANCE_PCT")
    @classmethod
    def _threshold_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Threshold must be positive, got {v}")
        return v

    @field_validator("BONUS_FACTORS")
    @classmethod
    def _bonus_factors_non_negative(cls, v: Dict[str, float]) -> Dict[str, float]:
        for status, factor in v.items():
            if factor < 0:
                raise ValueError(f"Bonus factor for {status} must be >= 0, got {factor}")
        return {status.upper(): factor for status, factor in v.items()}

    @field_validator("CLOSE_CONFIRMATION_LITERAL")
    @classmethod
    def _literal_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("CLOSE_CONFIRMATION_LITERAL must not be blank")
        return v.strip()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
