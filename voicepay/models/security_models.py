"""Pydantic models for security signals, decisions and validation results."""

from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SecurityErrorCode(str, Enum):
    """Stable error categories surfaced to callers."""

    PARSE_AMBIGUOUS = "parse_ambiguous"
    INVALID_RECIPIENT = "invalid_recipient"
    INVALID_AMOUNT = "invalid_amount"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    REPLAY_DETECTED = "replay_detected"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BALANCE_UNAVAILABLE = "balance_unavailable"
    FEE_ESTIMATION_UNAVAILABLE = "fee_estimation_unavailable"
    ENCRYPTION_FAILURE = "encryption_failure"


class SecurityLevel(str, Enum):
    """Authentication strength required before a request may execute."""

    BASIC = "basic"
    BIOMETRIC = "biometric"
    MULTIFACTOR = "multifactor"


class RateLimitScope(str, Enum):
    """Identity dimension a rate-limit counter is keyed on."""

    USER = "user"
    DEVICE = "device"
    ORIGIN = "origin"


class RateLimitResult(BaseModel):
    """Outcome of a rate-limit check."""

    allowed: bool = Field(..., description="Whether the request is under every quota")
    remaining: int = Field(..., ge=0, description="Requests left in the user window")
    reset_at: float = Field(..., description="Epoch seconds when the user window resets")
    limit: int = Field(..., ge=0, description="User quota for the window")
    count: int = Field(0, ge=0, description="Requests counted in the user window")
    exceeded_scope: Optional[RateLimitScope] = None
    error_code: Optional[SecurityErrorCode] = None

    @property
    def usage_ratio(self) -> float:
        if self.limit <= 0:
            return 1.0
        return self.count / self.limit


class VoiceVerificationResult(BaseModel):
    """Outcome of comparing a voice sample with a user's voiceprint."""

    verified: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    enrolled: bool = Field(False, description="True when this sample bootstrapped the profile")
    template_added: bool = False
    error: Optional[str] = None


class SecuritySignals(BaseModel):
    """Identity and abuse signals gathered for one request."""

    user_id: str
    device_hash: Optional[str] = None
    device_known: bool = False
    voice: Optional[VoiceVerificationResult] = None
    rate_limit: Optional[RateLimitResult] = None
    rate_limit_usage: float = Field(0.0, ge=0.0)
    replay_detected: bool = False
    balance: Optional[Decimal] = None


class SecurityDecision(BaseModel):
    """Risk assessment for one request. Derived per request, never persisted."""

    required_level: SecurityLevel
    risk_score: int = Field(..., ge=0, le=100)
    risk_factors: List[str] = Field(default_factory=list)
    allowed: bool
    denial_reason: Optional[str] = None
    error_code: Optional[SecurityErrorCode] = None


class ValidationResult(BaseModel):
    """Terminal balance/fee check before hand-off to signing."""

    ok: bool
    error_code: Optional[SecurityErrorCode] = None
    error: Optional[str] = None
    warnings: List[SecurityErrorCode] = Field(default_factory=list)
    fee: Optional[Decimal] = None


class SecurityMetrics(BaseModel):
    """Snapshot of a user's security posture."""

    rate_limit: int
    rate_limit_max: int
    biometric_required: bool
    voice_verification_required: bool
    enrolled_voice_templates: int
    known_devices: int
    risk_score: int = Field(..., ge=0, le=100)
