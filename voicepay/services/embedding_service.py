"""
Default voiceprint extractor built on the SpeechBrain ECAPA-TDNN speaker model.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import numpy as np
import torch
import torchaudio
from speechbrain.inference import EncoderClassifier

from voicepay.models.internal_models import VoiceSample

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 192
TARGET_SAMPLE_RATE = 16000
MIN_DURATION_SECONDS = 0.5


class EmbeddingService:
    """Generates speaker embeddings from voice samples using SpeechBrain ECAPA-TDNN."""

    def __init__(self, model_cache_dir: Optional[str] = None):
        """
        Initialize the embedding service.

        Args:
            model_cache_dir: Directory to cache the model files. If None, uses system temp dir.
        """
        self.model_cache_dir = model_cache_dir or os.path.join(tempfile.gettempdir(), "speechbrain_models")
        self.model: Optional[EncoderClassifier] = None
        self._model_loaded = False

        torch.set_num_threads(1)
        if torch.cuda.is_available():
            logger.warning("CUDA detected but forcing CPU-only mode")

        Path(self.model_cache_dir).mkdir(parents=True, exist_ok=True)

    def _load_model(self) -> None:
        """Load the SpeechBrain ECAPA-TDNN model with CPU-only configuration."""
        if self._model_loaded:
            return

        try:
            logger.info("Loading SpeechBrain ECAPA-TDNN model...")

            self.model = EncoderClassifier.from_hparams(
                source="speechbrain/spkrec-ecapa-voxceleb",
                savedir=self.model_cache_dir,
                run_opts={"device": "cpu"}
            )

            self._model_loaded = True
            logger.info("SpeechBrain ECAPA-TDNN model loaded successfully")

        except Exception as e:
            logger.error(f"Failed to load SpeechBrain model: {e}")
            raise RuntimeError(f"Model loading failed: {e}")

    def extract(self, sample: VoiceSample) -> np.ndarray:
        """
        Generate a 192-dimensional speaker embedding from a voice sample.

        Args:
            sample: Mono waveform with its sample rate

        Returns:
            numpy.ndarray: 192-dimensional speaker embedding vector

        Raises:
            RuntimeError: If model loading or embedding generation fails
            ValueError: If the sample is too short
        """
        if sample.duration < MIN_DURATION_SECONDS:
            raise ValueError(f"Voice sample too short (minimum {MIN_DURATION_SECONDS} seconds required)")

        self._load_model()

        try:
            waveform = torch.from_numpy(np.ascontiguousarray(sample.waveform, dtype=np.float32)).unsqueeze(0)

            # ECAPA model expects 16kHz
            if sample.sample_rate != TARGET_SAMPLE_RATE:
                resampler = torchaudio.transforms.Resample(sample.sample_rate, TARGET_SAMPLE_RATE)
                waveform = resampler(waveform)

            with torch.no_grad():
                embeddings = self.model.encode_batch(waveform)
                embedding = embeddings.squeeze().cpu().numpy()

            if embedding.shape != (EMBEDDING_DIM,):
                raise RuntimeError(f"Unexpected embedding shape: {embedding.shape}, expected ({EMBEDDING_DIM},)")

            if not self.validate_embedding(embedding):
                raise RuntimeError("Invalid embedding: non-finite or all-zero values")

            logger.debug(f"Generated embedding with shape: {embedding.shape}")
            return embedding

        except RuntimeError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e}")
            raise RuntimeError(f"Embedding generation failed: {e}")

    def validate_embedding(self, embedding: np.ndarray) -> bool:
        """
        Validate that an embedding has the correct format and dimensions.

        Args:
            embedding: Embedding vector to validate

        Returns:
            bool: True if embedding is valid, False otherwise
        """
        if not isinstance(embedding, np.ndarray):
            return False

        if embedding.ndim != 1 or embedding.shape[0] != EMBEDDING_DIM:
            return False

        if not np.isfinite(embedding).all():
            return False

        if np.allclose(embedding, 0):
            return False

        return True
