"""
Security context: owns every security store and exposes the public operations.

There are no module-level stores. Each ``SecurityContext`` carries its own
rate-limit windows, replay hashes, device registry and voiceprints, so tests
and tenants never share state.
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from voicepay.clients.config_store import JsonFileConfigStore
from voicepay.config import ParserTuning, RiskWeights, SecurityConfig, Settings
from voicepay.models.command_models import ParsedCommand
from voicepay.models.security_models import (
    RateLimitResult,
    RateLimitScope,
    SecurityDecision,
    SecurityMetrics,
    SecuritySignals,
    ValidationResult,
)
from voicepay.services.command_parser import CommandParser, ContactsInput
from voicepay.services.contact_directory import ContactDirectory
from voicepay.services.device_registry import DeviceFingerprintRegistry
from voicepay.services.encryption_service import EncryptionService
from voicepay.services.rate_limiter import RateLimiter
from voicepay.services.replay_guard import ReplayGuard
from voicepay.services.risk_scorer import RiskScorer
from voicepay.services.transaction_validator import TransactionValidator
from voicepay.services.voice_matcher import VoiceBiometricMatcher

logger = logging.getLogger(__name__)


class SecurityContext:
    """Dependency container for the parsing and risk-gating components."""

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        parser_tuning: Optional[ParserTuning] = None,
        risk_weights: Optional[RiskWeights] = None,
        contacts: Optional[ContactDirectory] = None,
        voice_matcher: Optional[VoiceBiometricMatcher] = None,
        cipher: Optional[EncryptionService] = None,
        config_store: Optional[JsonFileConfigStore] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the context.

        Args:
            config: Initial security configuration
            parser_tuning: Parser confidence constants
            risk_weights: Risk weights and level thresholds
            contacts: Default contact directory for ``parse_command``
            voice_matcher: Voiceprint matcher; a default one is created if None
            cipher: Cipher for data at rest; an ephemeral-key cipher if None
            config_store: Where config overrides are persisted, if anywhere
            clock: Source of epoch seconds shared by every component
        """
        self._config = config or SecurityConfig()
        self._baseline = self._config
        self._config_lock = threading.Lock()
        self._clock = clock

        tuning = parser_tuning or ParserTuning()
        self.contacts = contacts or ContactDirectory()
        self.parser = CommandParser(tuning=tuning, clock=clock)
        self.rate_limiter = RateLimiter(config=self._config, clock=clock)
        self.replay_guard = ReplayGuard(config=self._config, clock=clock)
        self.devices = DeviceFingerprintRegistry(clock=clock)
        self.voice_matcher = voice_matcher or VoiceBiometricMatcher(clock=clock)
        self.risk_scorer = RiskScorer(config=self._config, weights=risk_weights)
        self.validator = TransactionValidator(config=self._config, default_currency=tuning.default_currency)
        self.cipher = cipher or EncryptionService(required=self._config.encryption_required)
        self.cipher.required = self._config.encryption_required
        self.config_store = config_store

    @property
    def config(self) -> SecurityConfig:
        return self._config

    def parse_command(self, text: str, contacts: ContactsInput = None) -> ParsedCommand:
        return self.parser.parse(text, contacts if contacts is not None else self.contacts)

    def check_rate_limit(
        self,
        user_id: str,
        device_hash: Optional[str] = None,
        origin: Optional[str] = None
    ) -> RateLimitResult:
        """Admit-and-count one request across the user, device and origin windows."""
        return self.rate_limiter.check_and_increment(user_id, device_hash, origin)

    def check_replay(self, command_hash: str) -> bool:
        """True if ``command_hash`` was already submitted within the replay window."""
        return self.replay_guard.is_replay(command_hash)

    def assess_risk(
        self,
        command: ParsedCommand,
        signals: SecuritySignals,
        config: Optional[SecurityConfig] = None
    ) -> SecurityDecision:
        return self.risk_scorer.score(command, signals, config or self._config)

    def validate_transaction(
        self,
        command: ParsedCommand,
        balance: Optional[Decimal],
        fee: Optional[Decimal] = None
    ) -> ValidationResult:
        return self.validator.validate(command, balance, fee)

    def encrypt_at_rest(self, data: Any) -> str:
        return self.cipher.encrypt(data)

    def decrypt_at_rest(self, token: str) -> Any:
        return self.cipher.decrypt(token)

    def _apply_config(self, config: SecurityConfig) -> None:
        self._config = config
        self.rate_limiter.config = config
        self.replay_guard.config = config
        self.risk_scorer.config = config
        self.validator.config = config
        self.cipher.required = config.encryption_required

    def update_config(self, **overrides: Any) -> SecurityConfig:
        """
        Shallow-merge ``overrides`` into the live configuration.

        The merged result is validated before anything changes. With a
        config store attached, the overrides are persisted first; a store
        failure leaves the live configuration untouched.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
            ConfigStoreError: If the overrides cannot be persisted
        """
        with self._config_lock:
            new_config = self._config.merged(overrides)
            if self.config_store is not None:
                self.config_store.save(self._diff_from_baseline(new_config))
            self._apply_config(new_config)

        logger.info(f"Security config updated: {sorted(overrides)}")
        return new_config

    def _diff_from_baseline(self, config: SecurityConfig) -> Dict[str, Any]:
        baseline = self._baseline.model_dump()
        return {
            name: value for name, value in config.model_dump().items()
            if baseline.get(name) != value
        }

    def load_persisted_config(self) -> SecurityConfig:
        """Apply overrides saved by a previous ``update_config``."""
        if self.config_store is None:
            return self._config
        overrides = self.config_store.load()
        if not overrides:
            return self._config
        with self._config_lock:
            new_config = self._config.merged(overrides)
            self._apply_config(new_config)
        logger.info(f"Loaded {len(overrides)} persisted config overrides")
        return new_config

    def security_metrics(self, user_id: str, device_hash: Optional[str] = None) -> SecurityMetrics:
        """Snapshot of the user's rate-limit usage, enrollment and baseline risk."""
        weights = self.risk_scorer.weights
        risk_score = 0

        known_devices = self.devices.devices_for(user_id)
        if known_devices == 0 or (device_hash is not None and not self.devices.is_known(user_id, device_hash)):
            risk_score += weights.unknown_device

        if self.rate_limiter.usage_ratio(user_id) > weights.usage_ratio_threshold:
            risk_score += weights.high_request_rate

        return SecurityMetrics(
            rate_limit=self.rate_limiter.current_count(user_id),
            rate_limit_max=self.rate_limiter.quota(RateLimitScope.USER),
            biometric_required=self._config.require_biometric,
            voice_verification_required=self._config.voice_verification_required,
            enrolled_voice_templates=self.voice_matcher.template_count(user_id),
            known_devices=known_devices,
            risk_score=min(100, risk_score)
        )

    def emergency_lockdown(self) -> None:
        """Reject every further request until ``reset_security_state``."""
        self.update_config(rate_limit_per_hour=0)
        self.rate_limiter.reset()
        logger.warning("Emergency lockdown activated")

    def reset_security_state(self) -> None:
        """Clear rate-limit and replay state and restore the baseline rate limit."""
        self.rate_limiter.reset()
        self.replay_guard.reset()
        self.update_config(rate_limit_per_hour=self._baseline.rate_limit_per_hour)
        logger.info("Security state reset")

    def prune(self, now: Optional[float] = None) -> Dict[str, int]:
        """Drop stale entries from every store."""
        now = self._clock() if now is None else now
        removed = {
            "rate_limits": self.rate_limiter.prune(now),
            "replay_hashes": self.replay_guard.prune(now),
            "devices": self.devices.prune(now),
            "voice_profiles": self.voice_matcher.prune(now),
        }
        logger.debug(f"Pruned security state: {removed}")
        return removed


def build_security_context(
    settings: Settings,
    voice_matcher: Optional[VoiceBiometricMatcher] = None,
    clock: Callable[[], float] = time.time
) -> SecurityContext:
    """Wire a SecurityContext from environment settings."""
    config = settings.security_config()
    cipher = EncryptionService(key=settings.encryption_key, required=config.encryption_required)
    store = JsonFileConfigStore(settings.config_store_path, cipher) if settings.config_store_path else None

    context = SecurityContext(
        config=config,
        parser_tuning=settings.parser_tuning(),
        voice_matcher=voice_matcher,
        cipher=cipher,
        config_store=store,
        clock=clock
    )
    context.load_persisted_config()
    return context
