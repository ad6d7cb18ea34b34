"""Data models for the voice payment security pipeline."""

from .command_models import (
    CommandType,
    ParsedCommand
)
from .internal_models import (
    Contact,
    DeviceFingerprint,
    RateLimitWindow,
    ReplayEntry,
    VoiceSample,
    VoiceTemplate
)
from .security_models import (
    RateLimitResult,
    RateLimitScope,
    SecurityDecision,
    SecurityErrorCode,
    SecurityLevel,
    SecurityMetrics,
    SecuritySignals,
    ValidationResult,
    VoiceVerificationResult
)

__all__ = [
    "CommandType",
    "ParsedCommand",
    "Contact",
    "DeviceFingerprint",
    "RateLimitWindow",
    "ReplayEntry",
    "VoiceSample",
    "VoiceTemplate",
    "RateLimitResult",
    "RateLimitScope",
    "SecurityDecision",
    "SecurityErrorCode",
    "SecurityLevel",
    "SecurityMetrics",
    "SecuritySignals",
    "ValidationResult",
    "VoiceVerificationResult"
]
