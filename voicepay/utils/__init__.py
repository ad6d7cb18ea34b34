# Utilities module

from .audio_utils import (
    AudioProcessingError,
    get_audio_duration,
    pcm16_to_waveform,
    split_wav,
    validate_audio_format,
)
from .text_utils import (
    levenshtein_distance,
    normalize_text,
    similarity,
    tokenize,
)

__all__ = [
    "AudioProcessingError",
    "get_audio_duration",
    "pcm16_to_waveform",
    "split_wav",
    "validate_audio_format",
    "levenshtein_distance",
    "normalize_text",
    "similarity",
    "tokenize",
]
