"""
Tests for the voice biometric matcher.
"""

import numpy as np
import pytest
from unittest.mock import Mock, patch

from voicepay.config import VoiceMatchTuning
from voicepay.models.internal_models import VoiceSample
from voicepay.services.voice_matcher import VoiceBiometricMatcher, cosine_similarity


def unit(*components: float) -> np.ndarray:
    vector = np.array(components, dtype=np.float64)
    return vector / np.linalg.norm(vector)


def with_similarity(base: np.ndarray, other: np.ndarray, target: float) -> np.ndarray:
    """Unit vector at cosine ``target`` from ``base`` in the base/other plane."""
    return target * base + np.sqrt(1 - target ** 2) * other


E1 = unit(1, 0, 0)
E2 = unit(0, 1, 0)


@pytest.fixture
def sample():
    return VoiceSample(waveform=np.zeros(16000, dtype=np.float32))


@pytest.fixture
def extractor():
    return Mock()


@pytest.fixture
def matcher(extractor):
    return VoiceBiometricMatcher(extractor=extractor, clock=lambda: 1_000.0)


class TestCosineSimilarity:

    def test_identical(self):
        vector = np.random.randn(192)

        assert cosine_similarity(vector, vector) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity(E1, E2) == pytest.approx(0.0)

    def test_opposite_clipped_to_zero(self):
        assert cosine_similarity(E1, -E1) == 0.0

    def test_symmetric(self):
        a = np.random.randn(192)
        b = np.random.randn(192)

        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError, match="Embedding dimensions don't match"):
            cosine_similarity(np.random.randn(192), np.random.randn(128))

    def test_zero_norm(self):
        with pytest.raises(ValueError, match="Cannot compute similarity with zero-norm embedding"):
            cosine_similarity(np.zeros(192), np.random.randn(192))


class TestVerification:

    def test_first_sample_bootstraps(self, matcher, extractor, sample):
        extractor.extract.return_value = E1

        result = matcher.verify("u1", sample)

        assert result.verified is True
        assert result.confidence == 1.0
        assert result.enrolled is True
        assert matcher.is_enrolled("u1")
        assert matcher.template_count("u1") == 1

    def test_matching_voice_verified(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        extractor.extract.return_value = with_similarity(E1, E2, 0.87)

        result = matcher.verify("u1", sample)

        assert result.verified is True
        assert result.confidence == pytest.approx(0.87)
        assert result.enrolled is False
        # between verify and update thresholds: no new template
        assert result.template_added is False
        assert matcher.template_count("u1") == 1

    def test_threshold_is_strict(self, extractor, sample):
        scores = iter([0.85])
        matcher = VoiceBiometricMatcher(extractor=extractor, similarity=lambda a, b: next(scores))
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == pytest.approx(0.85)

    def test_mismatch_rejected(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        extractor.extract.return_value = E2

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == pytest.approx(0.0)

    def test_high_confidence_adds_template(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        extractor.extract.return_value = with_similarity(E1, E2, 0.95)

        result = matcher.verify("u1", sample)

        assert result.template_added is True
        assert matcher.template_count("u1") == 2

    def test_best_of_templates_used(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        near_e1 = with_similarity(E1, E2, 0.95)
        extractor.extract.return_value = near_e1
        matcher.verify("u1", sample)
        extractor.extract.return_value = with_similarity(near_e1, unit(0, 0, 1), 0.99)

        result = matcher.verify("u1", sample)

        assert result.confidence == pytest.approx(0.99)

    def test_templates_capped(self, extractor, sample):
        matcher = VoiceBiometricMatcher(
            extractor=extractor,
            similarity=lambda a, b: 0.95,
            tuning=VoiceMatchTuning(max_templates=3)
        )
        extractor.extract.return_value = E1

        for _ in range(6):
            matcher.verify("u1", sample)

        assert matcher.template_count("u1") == 3


class TestFailClosed:

    def test_extractor_failure(self, matcher, extractor, sample):
        extractor.extract.side_effect = RuntimeError("model unavailable")

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == 0.0
        assert "model unavailable" in result.error
        assert not matcher.is_enrolled("u1")

    def test_similarity_failure(self, extractor, sample):
        def broken(a, b):
            raise ValueError("boom")

        matcher = VoiceBiometricMatcher(extractor=extractor, similarity=broken)
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == 0.0
        assert "boom" in result.error

    @pytest.mark.parametrize("score", [1.5, -0.2])
    def test_out_of_range_similarity(self, extractor, sample, score):
        matcher = VoiceBiometricMatcher(extractor=extractor, similarity=lambda a, b: score)
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == 0.0
        assert matcher.template_count("u1") == 1

    def test_dimension_change_fails_closed(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        extractor.extract.return_value = np.ones(5)

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert "Embedding dimensions don't match" in result.error

    @pytest.mark.parametrize("embedding", [np.array([np.nan, 1.0, 0.0]), np.zeros(3)])
    def test_degenerate_embedding_not_enrolled(self, matcher, extractor, sample, embedding):
        extractor.extract.return_value = embedding

        result = matcher.verify("u1", sample)

        assert result.verified is False
        assert result.confidence == 0.0
        assert not matcher.is_enrolled("u1")
        assert matcher.enroll("u1", sample).verified is False

        extractor.extract.return_value = E1
        assert matcher.verify("u1", sample).enrolled is True


class TestProfileManagement:

    def test_enroll_replaces_profile(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        for _ in range(3):
            matcher.verify("u1", sample)
        assert matcher.template_count("u1") == 3

        result = matcher.enroll("u1", sample)

        assert result.enrolled is True
        assert matcher.template_count("u1") == 1

    def test_enroll_failure(self, matcher, extractor, sample):
        extractor.extract.side_effect = RuntimeError("bad audio")

        result = matcher.enroll("u1", sample)

        assert result.verified is False
        assert not matcher.is_enrolled("u1")

    def test_remove_profile(self, matcher, extractor, sample):
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)

        assert matcher.remove_profile("u1") is True
        assert matcher.remove_profile("u1") is False

    def test_prune_idle_profiles(self, extractor, sample):
        now = [0.0]
        matcher = VoiceBiometricMatcher(
            extractor=extractor,
            tuning=VoiceMatchTuning(profile_ttl_seconds=100),
            clock=lambda: now[0]
        )
        extractor.extract.return_value = E1
        matcher.verify("u1", sample)
        now[0] = 50.0
        matcher.verify("u2", sample)

        assert matcher.prune(now=120.0) == 1
        assert not matcher.is_enrolled("u1")
        assert matcher.is_enrolled("u2")

    @patch('voicepay.services.embedding_service.EmbeddingService')
    def test_default_extractor_created_lazily(self, mock_service_class):
        matcher = VoiceBiometricMatcher()
        mock_service_class.assert_not_called()

        extractor = matcher.extractor

        mock_service_class.assert_called_once_with()
        assert extractor is mock_service_class.return_value
