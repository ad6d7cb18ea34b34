"""Configuration management for the voice payment security pipeline."""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeePolicy(str, Enum):
    """What to do when no fee estimate is available for a transfer."""

    DENY = "deny"
    WARN = "warn"


class SecurityConfig(BaseModel):
    """
    Process-wide security configuration.

    Instances are immutable. Runtime changes go through ``merged``, which
    applies a shallow override and re-validates the result.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    require_biometric: bool = False
    rate_limit_per_hour: int = Field(100, ge=0)
    max_amount_without_mfa: Decimal = Field(Decimal("1000"), ge=0)
    replay_window_ms: int = Field(30_000, gt=0)
    encryption_required: bool = True
    voice_verification_required: bool = False
    fee_estimation_policy: FeePolicy = FeePolicy.WARN

    def merged(self, overrides: Optional[Mapping[str, Any]] = None) -> "SecurityConfig":
        """Return a new config with ``overrides`` shallow-merged on top of this one."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        return SecurityConfig.model_validate(data)


class ParserTuning(BaseModel):
    """Confidence constants used by the command parser."""

    model_config = ConfigDict(frozen=True)

    payment_confidence: float = 0.90
    contact_confidence: float = 0.85
    query_confidence: float = 0.90
    settings_confidence: float = 0.80
    unknown_confidence: float = 0.10

    missing_amount_factor: float = 0.5
    unknown_currency_factor: float = 0.8
    exact_contact_factor: float = 1.1
    raw_address_factor: float = 0.9
    fuzzy_contact_factor: float = 0.8
    unresolved_recipient_factor: float = 0.5

    suggestion_threshold: float = 0.7
    fuzzy_match_threshold: float = 0.6
    max_suggestions: int = 3

    default_currency: str = "DOT"
    currencies: FrozenSet[str] = frozenset({"DOT", "WND", "USDC", "KSM", "GLMR", "ASTR"})


class VoiceMatchTuning(BaseModel):
    """Thresholds for voiceprint verification and template refresh."""

    model_config = ConfigDict(frozen=True)

    verify_threshold: float = Field(0.85, ge=0.0, le=1.0)
    update_threshold: float = Field(0.90, ge=0.0, le=1.0)
    max_templates: int = Field(5, ge=1)
    profile_ttl_seconds: float = 365 * 24 * 3600.0


class RiskWeights(BaseModel):
    """Additive risk weights and the thresholds that map a score to a level."""

    model_config = ConfigDict(frozen=True)

    unknown_device: int = 25
    large_amount: int = 30
    missing_voice: int = 20
    low_voice_confidence: int = 15
    high_request_rate: int = 30

    low_voice_threshold: float = 0.8
    usage_ratio_threshold: float = 0.8

    multifactor_threshold: int = 50
    biometric_threshold: int = 30


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Security policy
    require_biometric: bool = False
    rate_limit_per_hour: int = 100
    max_amount_without_mfa: Decimal = Decimal("1000")
    replay_window_ms: int = 30_000
    encryption_required: bool = True
    voice_verification_required: bool = False
    fee_estimation_policy: FeePolicy = FeePolicy.WARN

    # Parser defaults
    default_currency: str = "DOT"

    # Encryption at rest: urlsafe base64 of a 16/24/32 byte AES key
    encryption_key: Optional[str] = None
    config_store_path: Optional[str] = None

    # Balance / fee oracle
    oracle_url: Optional[str] = None
    oracle_timeout_seconds: float = 5.0

    # Logging / telemetry
    log_level: str = "INFO"
    otlp_endpoint: Optional[str] = None

    @field_validator('rate_limit_per_hour')
    @classmethod
    def validate_rate_limit(cls, v):
        if v < 0:
            raise ValueError('RATE_LIMIT_PER_HOUR must not be negative')
        return v

    @field_validator('replay_window_ms')
    @classmethod
    def validate_replay_window(cls, v):
        if v <= 0:
            raise ValueError('REPLAY_WINDOW_MS must be positive')
        return v

    @field_validator('default_currency')
    @classmethod
    def validate_default_currency(cls, v):
        if not v or not v.isalpha():
            raise ValueError('DEFAULT_CURRENCY must be an alphabetic token symbol')
        return v.upper()

    @field_validator('oracle_timeout_seconds')
    @classmethod
    def validate_oracle_timeout(cls, v):
        if v <= 0:
            raise ValueError('ORACLE_TIMEOUT_SECONDS must be positive')
        return v

    def security_config(self) -> SecurityConfig:
        """Build the initial SecurityConfig from these settings."""
        fields: Dict[str, Any] = {
            name: getattr(self, name) for name in SecurityConfig.model_fields
        }
        return SecurityConfig(**fields)

    def parser_tuning(self) -> ParserTuning:
        return ParserTuning(default_currency=self.default_currency)


# Global settings instance
settings = Settings()
