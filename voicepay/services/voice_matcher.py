"""
Voice biometric matcher: enrollment and verification against stored voiceprints.

This module provides:
- Bootstrap enrollment on a user's first sample
- Best-of-N comparison against the stored templates
- Template refresh on high-confidence matches, keeping the most recent N

Feature extraction and similarity are injected. Any extractor exposing
``extract(sample) -> np.ndarray`` works; the default is the SpeechBrain
ECAPA-TDNN service. The similarity function must be symmetric and return a
value in [0, 1].
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol

import numpy as np

from voicepay.config import VoiceMatchTuning
from voicepay.models.internal_models import VoiceSample, VoiceTemplate
from voicepay.models.security_models import VoiceVerificationResult

logger = logging.getLogger(__name__)

SimilarityFunction = Callable[[np.ndarray, np.ndarray], float]


class FeatureExtractor(Protocol):
    def extract(self, sample: VoiceSample) -> np.ndarray:
        ...


def cosine_similarity(embedding1: np.ndarray, embedding2: np.ndarray) -> float:
    """
    Cosine similarity clipped to [0, 1].

    Symmetric in its arguments. Anti-correlated embeddings score 0.0.

    Raises:
        ValueError: If embeddings have different shapes or zero norm
    """
    if embedding1.shape != embedding2.shape:
        raise ValueError(f"Embedding dimensions don't match: {embedding1.shape} vs {embedding2.shape}")

    norm1 = np.linalg.norm(embedding1)
    norm2 = np.linalg.norm(embedding2)

    if norm1 == 0 or norm2 == 0:
        raise ValueError("Cannot compute similarity with zero-norm embedding")

    similarity = np.dot(embedding1, embedding2) / (norm1 * norm2)
    return float(np.clip(similarity, 0.0, 1.0))


class VoiceBiometricMatcher:
    """Per-user voiceprint store with threshold-based verify and refresh."""

    def __init__(
        self,
        extractor: Optional[FeatureExtractor] = None,
        similarity: SimilarityFunction = cosine_similarity,
        tuning: Optional[VoiceMatchTuning] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the matcher.

        Args:
            extractor: Feature extractor. If None, a SpeechBrain EmbeddingService
                is created on first use.
            similarity: Symmetric similarity in [0, 1]
            tuning: Verification / refresh thresholds and template cap
            clock: Source of epoch seconds
        """
        self._extractor = extractor
        self.similarity = similarity
        self.tuning = tuning or VoiceMatchTuning()
        self._clock = clock
        self._profiles: Dict[str, Deque[VoiceTemplate]] = {}
        self._lock = threading.Lock()

    @property
    def extractor(self) -> FeatureExtractor:
        if self._extractor is None:
            from voicepay.services.embedding_service import EmbeddingService
            self._extractor = EmbeddingService()
        return self._extractor

    def _new_profile(self) -> Deque[VoiceTemplate]:
        return deque(maxlen=self.tuning.max_templates)

    def is_enrolled(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._profiles.get(user_id))

    def template_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._profiles.get(user_id, ()))

    def enroll(self, user_id: str, sample: VoiceSample) -> VoiceVerificationResult:
        """Replace the user's profile with a single template from ``sample``."""
        try:
            embedding = np.asarray(self.extractor.extract(sample), dtype=np.float64)
            template = VoiceTemplate(embedding=embedding, confidence=1.0, timestamp=self._clock())
        except Exception as e:
            logger.error(f"Voice enrollment failed for user {user_id}: {e}")
            return VoiceVerificationResult(verified=False, confidence=0.0, error=f"Enrollment failed: {e}")

        with self._lock:
            profile = self._new_profile()
            profile.append(template)
            self._profiles[user_id] = profile

        logger.info(f"Enrolled voiceprint for user {user_id}")
        return VoiceVerificationResult(verified=True, confidence=1.0, enrolled=True, template_added=True)

    def verify(self, user_id: str, sample: VoiceSample) -> VoiceVerificationResult:
        """
        Verify ``sample`` against the user's voiceprint.

        The first sample for a user enrolls it and is trusted (confidence 1.0).
        Afterwards the best similarity across all stored templates decides;
        a match above the refresh threshold is stored as a new template.
        Any failure in extraction or comparison yields verified=False.
        """
        try:
            embedding = np.asarray(self.extractor.extract(sample), dtype=np.float64)
        except Exception as e:
            logger.error(f"Voice feature extraction failed for user {user_id}: {e}")
            return VoiceVerificationResult(verified=False, confidence=0.0, error=f"Feature extraction failed: {e}")

        now = self._clock()
        with self._lock:
            profile = self._profiles.get(user_id)

            if not profile:
                try:
                    template = VoiceTemplate(embedding=embedding, confidence=1.0, timestamp=now)
                except ValueError as e:
                    logger.error(f"Rejected bootstrap voiceprint for user {user_id}: {e}")
                    return VoiceVerificationResult(verified=False, confidence=0.0, error=str(e))
                profile = self._new_profile()
                profile.append(template)
                self._profiles[user_id] = profile
                logger.info(f"Bootstrapped voiceprint for user {user_id}")
                return VoiceVerificationResult(verified=True, confidence=1.0, enrolled=True, template_added=True)

            try:
                best = max(self._compare(embedding, template.embedding) for template in profile)
            except Exception as e:
                logger.error(f"Voiceprint comparison failed for user {user_id}: {e}")
                return VoiceVerificationResult(verified=False, confidence=0.0, error=f"Comparison failed: {e}")

            verified = best > self.tuning.verify_threshold
            template_added = False
            if verified and best > self.tuning.update_threshold:
                profile.append(VoiceTemplate(embedding=embedding, confidence=best, timestamp=now))
                template_added = True

        logger.info(
            f"Voice verification for user {user_id}: best={best:.4f}, "
            f"threshold={self.tuning.verify_threshold}, verified={verified}"
        )
        return VoiceVerificationResult(verified=verified, confidence=best, template_added=template_added)

    def _compare(self, embedding: np.ndarray, stored: np.ndarray) -> float:
        score = float(self.similarity(embedding, stored))
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"Similarity {score} outside [0, 1]")
        return score

    def remove_profile(self, user_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(user_id, None) is not None

    def prune(self, now: Optional[float] = None) -> int:
        """Drop profiles whose newest template is older than the profile TTL."""
        now = self._clock() if now is None else now
        with self._lock:
            stale = [
                user_id for user_id, profile in self._profiles.items()
                if not profile or now - profile[-1].timestamp > self.tuning.profile_ttl_seconds
            ]
            for user_id in stale:
                del self._profiles[user_id]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._profiles.clear()
