"""Internal data models for the voice payment security pipeline."""

from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from voicepay.utils.audio_utils import pcm16_to_waveform, split_wav


@dataclass
class Contact:
    """Address book entry; names are case-insensitive keys."""

    name: str
    address: str
    verified: bool = False

    def __post_init__(self):
        self.name = self.name.strip().lower()
        if not self.name:
            raise ValueError("Contact name must not be empty")


@dataclass
class RateLimitWindow:
    """Request counter for one (scope, identity) pair."""

    key: str
    count: int
    window_start: float  # epoch seconds
    window_size: float  # seconds
    last_seen: float

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_size

    def expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_size


@dataclass
class ReplayEntry:
    """Last sighting of a command hash."""

    command_hash: str
    last_seen: float


@dataclass
class DeviceFingerprint:
    """A device seen for a given user."""

    hash: str
    components: Dict[str, str]
    user_id: Optional[str] = None
    first_seen: float = 0.0
    last_seen: float = 0.0


@dataclass
class VoiceTemplate:
    """Stored voiceprint embedding."""

    embedding: np.ndarray
    confidence: float
    timestamp: float

    def __post_init__(self):
        """Validate template contents after initialization."""
        if self.embedding.ndim != 1 or self.embedding.size == 0:
            raise ValueError(f"Embedding must be a non-empty vector, got shape {self.embedding.shape}")
        if not np.isfinite(self.embedding).all() or not np.any(self.embedding):
            raise ValueError("Embedding must be finite and non-zero")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0.0 and 1.0, got {self.confidence}")


@dataclass
class VoiceSample:
    """A mono utterance handed to the voice matcher."""

    waveform: np.ndarray
    sample_rate: int = 16000
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sample_rate}")
        if self.waveform.ndim != 1:
            raise ValueError(f"Waveform must be mono (1-D), got shape {self.waveform.shape}")

    @property
    def duration(self) -> float:
        return self.waveform.shape[0] / float(self.sample_rate)

    @classmethod
    def from_pcm16(cls, pcm_data: bytes, sample_rate: int = 16000) -> "VoiceSample":
        """Build a sample from raw little-endian 16-bit PCM."""
        return cls(waveform=pcm16_to_waveform(pcm_data), sample_rate=sample_rate)

    @classmethod
    def from_wav(cls, wav_data: bytes) -> "VoiceSample":
        """Build a sample from a mono 16-bit WAV payload."""
        pcm_data, sample_rate = split_wav(wav_data)
        return cls.from_pcm16(pcm_data, sample_rate=sample_rate)
