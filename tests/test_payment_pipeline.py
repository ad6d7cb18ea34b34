"""
End-to-end tests for the voice payment pipeline.
"""

from decimal import Decimal

import numpy as np
import pytest
from unittest.mock import AsyncMock, Mock, patch

from voicepay.clients.chain_oracle import HttpChainOracle, OracleTimeoutError
from voicepay.config import SecurityConfig, Settings
from voicepay.models.command_models import CommandType
from voicepay.models.internal_models import VoiceSample
from voicepay.models.security_models import SecurityErrorCode, SecurityLevel
from voicepay.services.contact_directory import ContactDirectory
from voicepay.services.device_registry import fingerprint
from voicepay.services.encryption_service import EncryptionService, generate_key
from voicepay.services.payment_pipeline import PaymentRequest, VoicePaymentPipeline, build_payment_pipeline
from voicepay.services.security_context import SecurityContext
from voicepay.services.voice_matcher import VoiceBiometricMatcher

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
SENDER = "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"


@pytest.fixture
def extractor():
    extractor = Mock()
    extractor.extract.return_value = np.array([1.0, 0.0, 0.0])
    return extractor


@pytest.fixture
def context(extractor):
    contacts = ContactDirectory()
    contacts.add("alice", ALICE)
    return SecurityContext(
        config=SecurityConfig(rate_limit_per_hour=2),
        contacts=contacts,
        voice_matcher=VoiceBiometricMatcher(extractor=extractor),
        cipher=EncryptionService(key=generate_key())
    )


@pytest.fixture
def oracle():
    oracle = AsyncMock()
    oracle.get_balance.return_value = Decimal("100")
    oracle.estimate_fee.return_value = Decimal("0.01")
    return oracle


@pytest.fixture
def pipeline(context, oracle):
    return VoicePaymentPipeline(context, balance_oracle=oracle, fee_oracle=oracle, oracle_timeout=1.0)


def request(text: str = "send 5 DOT to alice", **kwargs) -> PaymentRequest:
    data = {"user_id": "u1", "text": text, "account": SENDER, "device_hash": "dev-1"}
    data.update(kwargs)
    return PaymentRequest(**data)


class TestVoicePaymentPipeline:

    @pytest.mark.asyncio
    async def test_accepted_payment(self, pipeline, context, oracle):
        outcome = await pipeline.process(request())

        assert outcome.accepted
        assert outcome.summary == "Send 5 DOT to alice"
        assert outcome.decision.required_level == SecurityLevel.BASIC
        assert outcome.decision.risk_factors == ["Unknown device"]
        assert outcome.validation.fee == Decimal("0.01")
        assert context.devices.is_known("u1", "dev-1")
        oracle.get_balance.assert_awaited_once_with(SENDER, "DOT")

    @pytest.mark.asyncio
    async def test_known_device_lowers_risk(self, pipeline, context):
        context.devices.register("u1", "dev-1")

        outcome = await pipeline.process(request())

        assert outcome.decision.risk_score == 0

    @pytest.mark.asyncio
    async def test_device_components_fingerprinted(self, pipeline, context):
        components = {"ua": "Firefox", "tz": "UTC"}

        await pipeline.process(request(device_hash=None, device_components=components))

        assert context.devices.is_known("u1", fingerprint(components).hash)

    @pytest.mark.asyncio
    async def test_ambiguous_command(self, pipeline, oracle):
        outcome = await pipeline.process(request("asdlkj qqq"))

        assert not outcome.accepted
        assert outcome.error_code == SecurityErrorCode.PARSE_AMBIGUOUS
        assert outcome.clarification.startswith("I didn't understand that command.")
        oracle.get_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_payment_command(self, pipeline):
        outcome = await pipeline.process(request("what's my balance"))

        assert not outcome.accepted
        assert outcome.command.type == CommandType.QUERY
        assert outcome.reason == "Not a payment command"
        assert outcome.decision is None

    @pytest.mark.asyncio
    async def test_replay_denied(self, pipeline, oracle):
        first = await pipeline.process(request())
        second = await pipeline.process(request())

        assert first.accepted
        assert not second.accepted
        assert second.error_code == SecurityErrorCode.REPLAY_DETECTED
        assert oracle.get_balance.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_denied(self, pipeline):
        for amount in (1, 2):
            assert (await pipeline.process(request(f"send {amount} DOT to alice"))).accepted

        outcome = await pipeline.process(request("send 3 DOT to alice"))

        assert outcome.error_code == SecurityErrorCode.RATE_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_high_usage_escalates_level(self, pipeline):
        await pipeline.process(request("send 1 DOT to alice"))

        outcome = await pipeline.process(request("send 2 DOT to alice"))

        # usage is 2/2 after this request's increment
        assert "High request rate" in outcome.decision.risk_factors
        assert outcome.decision.required_level == SecurityLevel.BIOMETRIC

    @pytest.mark.asyncio
    async def test_unresolved_recipient_denied(self, pipeline, context):
        context.contacts.add("zed", "not-an-address")

        outcome = await pipeline.process(request("send 5 DOT to zed"))

        assert outcome.error_code == SecurityErrorCode.INVALID_RECIPIENT

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, pipeline, oracle):
        oracle.get_balance.return_value = Decimal("3")

        outcome = await pipeline.process(request())

        assert not outcome.accepted
        assert outcome.error_code == SecurityErrorCode.INSUFFICIENT_BALANCE
        assert outcome.decision.allowed

    @pytest.mark.asyncio
    async def test_balance_timeout_fails_closed(self, pipeline, oracle):
        oracle.get_balance.side_effect = OracleTimeoutError("slow")

        outcome = await pipeline.process(request())

        assert outcome.error_code == SecurityErrorCode.BALANCE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_without_balance_oracle(self, context):
        outcome = await VoicePaymentPipeline(context).process(request())

        assert not outcome.accepted
        assert outcome.error_code == SecurityErrorCode.BALANCE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_voice_mismatch_adds_risk(self, pipeline, context, extractor):
        context.update_config(voice_verification_required=True)
        sample = VoiceSample(waveform=np.zeros(16000, dtype=np.float32))
        await pipeline.process(request("send 1 DOT to alice", voice_sample=sample))
        extractor.extract.return_value = np.array([0.0, 1.0, 0.0])

        outcome = await pipeline.process(request("send 2 DOT to alice", voice_sample=sample))

        assert not outcome.voice.verified
        assert "Low voice confidence" in outcome.decision.risk_factors

    @pytest.mark.asyncio
    async def test_over_quota_request_skips_voice_matcher(self, pipeline, context, extractor):
        sample = VoiceSample(waveform=np.zeros(16000, dtype=np.float32))
        for amount in (1, 2):
            assert (await pipeline.process(request(f"send {amount} DOT to alice", voice_sample=sample))).accepted
        templates = context.voice_matcher.template_count("u1")
        extractions = extractor.extract.call_count

        for amount in (3, 4, 5):
            outcome = await pipeline.process(request(f"send {amount} DOT to alice", voice_sample=sample))

            assert outcome.error_code == SecurityErrorCode.RATE_LIMIT_EXCEEDED
            assert outcome.voice is None

        assert context.voice_matcher.template_count("u1") == templates
        assert extractor.extract.call_count == extractions

    @pytest.mark.asyncio
    async def test_replayed_request_skips_voice_matcher(self, pipeline, extractor):
        sample = VoiceSample(waveform=np.zeros(16000, dtype=np.float32))
        await pipeline.process(request(voice_sample=sample))

        outcome = await pipeline.process(request(voice_sample=sample))

        assert outcome.error_code == SecurityErrorCode.REPLAY_DETECTED
        assert outcome.voice is None
        assert extractor.extract.call_count == 1

    @pytest.mark.asyncio
    async def test_invalid_recipient_skips_voice_matcher(self, pipeline, context, extractor):
        context.contacts.add("zed", "not-an-address")
        sample = VoiceSample(waveform=np.zeros(16000, dtype=np.float32))

        outcome = await pipeline.process(request("send 5 DOT to zed", voice_sample=sample))

        assert outcome.error_code == SecurityErrorCode.INVALID_RECIPIENT
        assert outcome.voice is None
        extractor.extract.assert_not_called()
        assert not context.voice_matcher.is_enrolled("u1")

    @pytest.mark.asyncio
    async def test_retry_after_balance_timeout_is_not_replay(self, pipeline, oracle):
        oracle.get_balance.side_effect = OracleTimeoutError("slow")
        first = await pipeline.process(request())
        oracle.get_balance.side_effect = None

        retry = await pipeline.process(request())

        assert first.error_code == SecurityErrorCode.BALANCE_UNAVAILABLE
        assert retry.accepted

    @pytest.mark.asyncio
    async def test_insufficient_balance_keeps_replay_slot(self, pipeline, oracle):
        oracle.get_balance.return_value = Decimal("3")
        await pipeline.process(request())

        outcome = await pipeline.process(request())

        assert outcome.error_code == SecurityErrorCode.REPLAY_DETECTED


class TestBuildPaymentPipeline:

    @pytest.fixture
    def bootstrap(self):
        with patch("voicepay.services.payment_pipeline.configure_logging") as configure_logging, \
             patch("voicepay.services.payment_pipeline.setup_observability") as setup_observability, \
             patch("voicepay.services.payment_pipeline.instrument_http_clients") as instrument:
            yield configure_logging, setup_observability, instrument

    def test_wires_from_settings(self, bootstrap):
        configure_logging, setup_observability, instrument = bootstrap
        settings = Settings(
            _env_file=None,
            encryption_key=generate_key(),
            oracle_url="https://oracle.test/v1",
            oracle_timeout_seconds=2.5,
            log_level="DEBUG",
            otlp_endpoint="http://collector:4317"
        )

        pipeline = build_payment_pipeline(settings, voice_matcher=VoiceBiometricMatcher(extractor=Mock()))

        configure_logging.assert_called_once_with("DEBUG")
        assert setup_observability.call_args.kwargs["otlp_endpoint"] == "http://collector:4317"
        instrument.assert_called_once()
        assert isinstance(pipeline.balance_oracle, HttpChainOracle)
        assert pipeline.balance_oracle.base_url == "https://oracle.test/v1"
        assert pipeline.balance_oracle.timeout == 2.5
        assert pipeline.fee_oracle is pipeline.balance_oracle
        assert pipeline.oracle_timeout == 2.5

    @pytest.mark.asyncio
    async def test_without_oracle_url_fails_closed(self, bootstrap):
        settings = Settings(_env_file=None, encryption_key=generate_key())

        pipeline = build_payment_pipeline(settings, voice_matcher=VoiceBiometricMatcher(extractor=Mock()))
        outcome = await pipeline.process(request(f"send 5 DOT to {ALICE}"))

        assert pipeline.balance_oracle is None
        assert outcome.error_code == SecurityErrorCode.BALANCE_UNAVAILABLE
