"""
Audio helpers for preparing voice samples.

This module provides functions for:
- Converting 16-bit PCM to normalized float waveforms
- Validating and unpacking mono 16-bit WAV payloads
- Measuring utterance duration
"""

import logging
import struct
from typing import Tuple

import numpy as np

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44


class AudioProcessingError(Exception):
    """Raised when audio processing operations fail."""
    pass


def pcm16_to_waveform(pcm_data: bytes) -> np.ndarray:
    """
    Convert little-endian 16-bit PCM to a float32 waveform in [-1, 1].

    Args:
        pcm_data: Raw PCM audio data (mono)

    Returns:
        1-D float32 numpy array

    Raises:
        AudioProcessingError: If the buffer is empty or not 16-bit aligned
    """
    if not pcm_data:
        raise AudioProcessingError("PCM data is empty")
    if len(pcm_data) % 2:
        raise AudioProcessingError(f"PCM data length {len(pcm_data)} is not a multiple of 2 bytes")

    samples = np.frombuffer(pcm_data, dtype="<i2").astype(np.float32)
    return samples / 32768.0


def validate_audio_format(audio_data: bytes) -> Tuple[bool, str]:
    """
    Validate that audio data is a mono 16-bit PCM WAV.

    Args:
        audio_data: Audio data to validate

    Returns:
        Tuple of (is_valid, description)
    """
    try:
        if len(audio_data) < WAV_HEADER_SIZE:
            return False, "Audio data too short to contain WAV header"

        if audio_data[:4] != b'RIFF' or audio_data[8:12] != b'WAVE':
            return False, "Not a valid WAV file"

        channels = struct.unpack('<H', audio_data[22:24])[0]
        sample_rate = struct.unpack('<I', audio_data[24:28])[0]
        bits_per_sample = struct.unpack('<H', audio_data[34:36])[0]

        if channels != 1:
            return False, f"Expected mono (1 channel), got {channels} channels"

        if bits_per_sample != 16:
            return False, f"Expected 16-bit samples, got {bits_per_sample}-bit"

        return True, f"Valid {sample_rate}Hz mono WAV format"

    except (struct.error, IndexError) as e:
        return False, f"Error parsing WAV header: {e}"


def split_wav(audio_data: bytes) -> Tuple[bytes, int]:
    """
    Split a mono 16-bit WAV into its PCM payload and sample rate.

    Raises:
        AudioProcessingError: If the payload is not a supported WAV
    """
    is_valid, description = validate_audio_format(audio_data)
    if not is_valid:
        raise AudioProcessingError(f"Unsupported audio: {description}")

    sample_rate = struct.unpack('<I', audio_data[24:28])[0]
    pcm_data = audio_data[WAV_HEADER_SIZE:]
    logger.debug(f"Unpacked WAV: {len(pcm_data)} bytes PCM at {sample_rate}Hz")
    return pcm_data, sample_rate


def get_audio_duration(waveform: np.ndarray, sample_rate: int) -> float:
    """
    Get duration of a waveform in seconds.

    Raises:
        AudioProcessingError: If the sample rate is not positive
    """
    if sample_rate <= 0:
        raise AudioProcessingError(f"Invalid sample rate: {sample_rate}")
    return waveform.shape[-1] / float(sample_rate)
