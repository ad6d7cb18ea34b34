"""
Risk scorer and security level resolver.

Scoring is additive and bounded: every factor contributes its weight at most
once and the total is clamped to 100. The score maps to the authentication
level required before execution:

- score >= multifactor threshold, or amount over the MFA limit: multifactor
- score >= biometric threshold, or biometrics required by policy: biometric
- otherwise: basic

Hard failures (replay, rate limit, malformed amount or recipient, insufficient
balance) deny the request outright. They are checked in that order and only
the first one is reported.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from voicepay.config import RiskWeights, SecurityConfig
from voicepay.models.command_models import ParsedCommand
from voicepay.models.security_models import (
    SecurityDecision,
    SecurityErrorCode,
    SecurityLevel,
    SecuritySignals,
)
from voicepay.services.contact_directory import is_valid_address

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 100

FACTOR_UNKNOWN_DEVICE = "Unknown device"
FACTOR_LARGE_AMOUNT = "Large transaction amount"
FACTOR_NO_VOICE = "No voice verification"
FACTOR_LOW_VOICE = "Low voice confidence"
FACTOR_HIGH_RATE = "High request rate"


def resolve_level(
    risk_score: int,
    amount: Optional[Decimal],
    config: SecurityConfig,
    weights: RiskWeights
) -> SecurityLevel:
    """Map a risk score (and the amount) to the required authentication level."""
    large = amount is not None and amount > config.max_amount_without_mfa
    if risk_score >= weights.multifactor_threshold or large:
        return SecurityLevel.MULTIFACTOR
    if risk_score >= weights.biometric_threshold or config.require_biometric:
        return SecurityLevel.BIOMETRIC
    return SecurityLevel.BASIC


class RiskScorer:
    """Stateless scorer; configuration can be replaced between calls."""

    def __init__(self, config: Optional[SecurityConfig] = None, weights: Optional[RiskWeights] = None):
        self.config = config or SecurityConfig()
        self.weights = weights or RiskWeights()

    def risk_factors(
        self,
        command: ParsedCommand,
        signals: SecuritySignals,
        config: SecurityConfig
    ) -> List[Tuple[str, int]]:
        """Every soft factor that applies, with its weight."""
        w = self.weights
        factors: List[Tuple[str, int]] = []

        if not signals.device_hash or not signals.device_known:
            factors.append((FACTOR_UNKNOWN_DEVICE, w.unknown_device))

        if command.amount is not None and command.amount > config.max_amount_without_mfa:
            factors.append((FACTOR_LARGE_AMOUNT, w.large_amount))

        voice = signals.voice
        if config.voice_verification_required:
            if voice is None:
                factors.append((FACTOR_NO_VOICE, w.missing_voice))
            elif not voice.verified or voice.confidence < w.low_voice_threshold:
                factors.append((FACTOR_LOW_VOICE, w.low_voice_confidence))

        if signals.rate_limit_usage > w.usage_ratio_threshold:
            factors.append((FACTOR_HIGH_RATE, w.high_request_rate))

        return factors

    def hard_failure(
        self,
        command: ParsedCommand,
        signals: SecuritySignals
    ) -> Optional[Tuple[SecurityErrorCode, str]]:
        """First hard failure in priority order, or None."""
        if signals.replay_detected:
            return SecurityErrorCode.REPLAY_DETECTED, "Replay attack detected"

        if signals.rate_limit is not None and not signals.rate_limit.allowed:
            return SecurityErrorCode.RATE_LIMIT_EXCEEDED, "Rate limit exceeded"

        if not command.is_payment:
            return None

        if command.amount is None or command.amount <= 0:
            return SecurityErrorCode.INVALID_AMOUNT, "Invalid amount"

        if not is_valid_address(command.recipient_address):
            return SecurityErrorCode.INVALID_RECIPIENT, "Invalid recipient address"

        if signals.balance is not None and signals.balance < command.amount:
            return SecurityErrorCode.INSUFFICIENT_BALANCE, "Insufficient balance"

        return None

    def score(
        self,
        command: ParsedCommand,
        signals: SecuritySignals,
        config: Optional[SecurityConfig] = None
    ) -> SecurityDecision:
        """
        Assess one request.

        Args:
            command: Parsed command
            signals: Identity and abuse signals gathered for the request
            config: Per-call override of the scorer's configuration

        Returns:
            SecurityDecision with the required level, score and factors
        """
        config = config or self.config

        factors = self.risk_factors(command, signals, config)
        risk_score = min(MAX_RISK_SCORE, sum(weight for _, weight in factors))
        level = resolve_level(risk_score, command.amount, config, self.weights)

        failure = self.hard_failure(command, signals)
        if failure is not None:
            error_code, reason = failure
            logger.warning(f"Denied request for user {signals.user_id}: {reason}")
            return SecurityDecision(
                required_level=level,
                risk_score=risk_score,
                risk_factors=[name for name, _ in factors],
                allowed=False,
                denial_reason=reason,
                error_code=error_code
            )

        logger.debug(f"Risk for user {signals.user_id}: score={risk_score}, level={level.value}")
        return SecurityDecision(
            required_level=level,
            risk_score=risk_score,
            risk_factors=[name for name, _ in factors],
            allowed=True
        )
