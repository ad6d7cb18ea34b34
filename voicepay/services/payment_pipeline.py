"""
End-to-end voice payment flow.

text -> ParsedCommand -> {rate limit, replay} -> voice -> SecurityDecision
-> balance/fee validation -> accept or deny with a reason.

Only payment commands go through risk gating. Every other command is handed
back to the caller unexecuted together with a summary, and commands the parser
is unsure about come back with a clarification prompt instead.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import structlog
from pydantic import BaseModel

from voicepay.clients.chain_oracle import BalanceOracle, FeeOracle, HttpChainOracle
from voicepay.config import Settings
from voicepay.models.command_models import ParsedCommand
from voicepay.models.internal_models import VoiceSample
from voicepay.models.security_models import (
    SecurityDecision,
    SecurityErrorCode,
    SecuritySignals,
    ValidationResult,
    VoiceVerificationResult,
)
from voicepay.observability import (
    bind_trace_context,
    configure_logging,
    instrument_http_clients,
    record_decision_metrics,
    record_parse_metrics,
    record_validation_metrics,
    setup_observability,
    trace_function,
)
from voicepay.services.command_parser import ContactsInput
from voicepay.services.device_registry import fingerprint
from voicepay.services.replay_guard import compute_command_hash
from voicepay.services.security_context import SecurityContext, build_security_context
from voicepay.services.voice_matcher import VoiceBiometricMatcher

logger = structlog.get_logger()


@dataclass
class PaymentRequest:
    """One spoken request from an authenticated user."""

    user_id: str
    text: str
    account: str
    device_hash: Optional[str] = None
    device_components: Dict[str, str] = field(default_factory=dict)
    origin: Optional[str] = None
    voice_sample: Optional[VoiceSample] = None
    contacts: ContactsInput = None

    def resolved_device_hash(self) -> Optional[str]:
        if self.device_hash:
            return self.device_hash
        if self.device_components:
            return fingerprint(self.device_components).hash
        return None


class PaymentOutcome(BaseModel):
    """Final answer for one request."""

    command: ParsedCommand
    accepted: bool
    summary: str
    reason: Optional[str] = None
    error_code: Optional[SecurityErrorCode] = None
    clarification: Optional[str] = None
    voice: Optional[VoiceVerificationResult] = None
    decision: Optional[SecurityDecision] = None
    validation: Optional[ValidationResult] = None


class VoicePaymentPipeline:
    """Runs a PaymentRequest through parsing, risk gating and validation."""

    def __init__(
        self,
        context: SecurityContext,
        balance_oracle: Optional[BalanceOracle] = None,
        fee_oracle: Optional[FeeOracle] = None,
        oracle_timeout: float = 5.0
    ):
        self.context = context
        self.balance_oracle = balance_oracle
        self.fee_oracle = fee_oracle
        self.oracle_timeout = oracle_timeout

    @trace_function("voicepay.pipeline.process")
    async def process(self, request: PaymentRequest) -> PaymentOutcome:
        start_time = time.time()
        bind_trace_context()
        log = logger.bind(user_id=request.user_id)

        command = self.context.parse_command(request.text, request.contacts)
        summary = self.context.parser.summarize(command)
        record_parse_metrics(command.type.value, command.confidence, command.parameters.get("matched_rule"))
        log.info("Command parsed", command_type=command.type.value, confidence=command.confidence)

        if command.needs_clarification:
            return PaymentOutcome(
                command=command,
                accepted=False,
                summary=summary,
                reason="Command not understood",
                error_code=SecurityErrorCode.PARSE_AMBIGUOUS,
                clarification=self.context.parser.clarification_prompt(request.text)
            )

        if not command.is_payment:
            return PaymentOutcome(
                command=command,
                accepted=False,
                summary=summary,
                reason="Not a payment command"
            )

        device_hash = request.resolved_device_hash()
        device_known = self.context.devices.is_known(request.user_id, device_hash)

        rate_limit = self.context.check_rate_limit(request.user_id, device_hash, request.origin)
        command_hash = compute_command_hash(command, request.user_id)
        replay_detected = False
        if rate_limit.allowed:
            replay_detected = self.context.check_replay(command_hash)

        signals = SecuritySignals(
            user_id=request.user_id,
            device_hash=device_hash,
            device_known=device_known,
            rate_limit=rate_limit,
            rate_limit_usage=self.context.rate_limiter.usage_ratio(request.user_id),
            replay_detected=replay_detected
        )

        # The voiceprint store is only touched by requests that pass every hard check
        voice = None
        if request.voice_sample is not None and self.context.risk_scorer.hard_failure(command, signals) is None:
            voice = self.context.voice_matcher.verify(request.user_id, request.voice_sample)
            signals = signals.model_copy(update={"voice": voice})

        decision = self.context.assess_risk(command, signals)
        record_decision_metrics(
            decision.allowed,
            decision.required_level.value,
            decision.risk_score,
            decision.error_code.value if decision.error_code else None
        )

        if not decision.allowed:
            log.warning("Payment denied", reason=decision.denial_reason, risk_score=decision.risk_score)
            return PaymentOutcome(
                command=command,
                accepted=False,
                summary=summary,
                reason=decision.denial_reason,
                error_code=decision.error_code,
                decision=decision
            )

        if device_hash:
            self.context.devices.register(request.user_id, device_hash, request.device_components)

        if self.balance_oracle is None:
            validation = self.context.validate_transaction(command, None)
        else:
            validation = await self.context.validator.validate_with_oracles(
                command,
                request.account,
                self.balance_oracle,
                self.fee_oracle,
                self.oracle_timeout
            )

        if validation.error_code == SecurityErrorCode.BALANCE_UNAVAILABLE:
            # A fail-closed balance lookup does not consume the replay slot
            self.context.replay_guard.release(command_hash)

        processing_time = time.time() - start_time
        record_validation_metrics(
            validation.ok,
            validation.error_code.value if validation.error_code else None,
            processing_time
        )

        log.info(
            "Payment processed",
            accepted=validation.ok,
            required_level=decision.required_level.value,
            risk_score=decision.risk_score,
            error_code=validation.error_code.value if validation.error_code else None,
            processing_time=processing_time
        )

        return PaymentOutcome(
            command=command,
            accepted=validation.ok,
            summary=summary,
            reason=validation.error,
            error_code=validation.error_code,
            voice=voice,
            decision=decision,
            validation=validation
        )


def build_payment_pipeline(
    settings: Settings,
    voice_matcher: Optional[VoiceBiometricMatcher] = None,
    clock: Callable[[], float] = time.time
) -> VoicePaymentPipeline:
    """
    Wire logging, telemetry, the security context and the chain oracle from settings.

    Without ``ORACLE_URL`` the pipeline has no balance source and every
    payment fails closed with BALANCE_UNAVAILABLE.
    """
    configure_logging(settings.log_level)
    setup_observability(
        service_name="voicepay",
        service_version="1.0.0",
        otlp_endpoint=settings.otlp_endpoint
    )
    instrument_http_clients()

    context = build_security_context(settings, voice_matcher=voice_matcher, clock=clock)

    oracle = None
    if settings.oracle_url:
        oracle = HttpChainOracle(settings.oracle_url, timeout=settings.oracle_timeout_seconds)
    else:
        logger.warning("ORACLE_URL not set, payments will fail balance validation")

    logger.info("Payment pipeline ready", oracle_url=settings.oracle_url, otlp_endpoint=settings.otlp_endpoint)
    return VoicePaymentPipeline(
        context,
        balance_oracle=oracle,
        fee_oracle=oracle,
        oracle_timeout=settings.oracle_timeout_seconds
    )
