"""
Tests for the embedding service.
"""

import os
import tempfile
import numpy as np
import pytest
import torch
from unittest.mock import Mock, patch

from voicepay.models.internal_models import VoiceSample
from voicepay.services.embedding_service import EmbeddingService


class TestEmbeddingService:
    """Test cases for EmbeddingService."""

    @pytest.fixture
    def embedding_service(self):
        """Create an embedding service instance for testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            service = EmbeddingService(model_cache_dir=temp_dir)
            yield service

    @pytest.fixture
    def mock_model(self):
        """Create a mock SpeechBrain model."""
        mock_model = Mock()
        # Mock embedding output (192-dimensional)
        mock_model.encode_batch.return_value = torch.randn(1, 192)
        return mock_model

    @pytest.fixture
    def one_second_sample(self):
        """One second of a 440Hz tone at 16kHz."""
        t = np.linspace(0, 1.0, 16000, dtype=np.float32)
        return VoiceSample(waveform=np.sin(2 * np.pi * 440.0 * t).astype(np.float32), sample_rate=16000)

    def test_init(self):
        """Test EmbeddingService initialization."""
        with tempfile.TemporaryDirectory() as temp_dir:
            service = EmbeddingService(model_cache_dir=temp_dir)

            assert service.model_cache_dir == temp_dir
            assert service.model is None
            assert not service._model_loaded
            assert os.path.exists(temp_dir)

    def test_init_default_cache_dir(self):
        """Test EmbeddingService initialization with default cache directory."""
        service = EmbeddingService()

        expected_dir = os.path.join(tempfile.gettempdir(), "speechbrain_models")
        assert service.model_cache_dir == expected_dir
        assert os.path.exists(expected_dir)

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_load_model_success(self, mock_encoder_class, embedding_service, mock_model):
        """Test successful model loading."""
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding_service._load_model()

        assert embedding_service._model_loaded
        assert embedding_service.model == mock_model

        mock_encoder_class.from_hparams.assert_called_once_with(
            source="speechbrain/spkrec-ecapa-voxceleb",
            savedir=embedding_service.model_cache_dir,
            run_opts={"device": "cpu"}
        )

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_load_model_only_once(self, mock_encoder_class, embedding_service, mock_model):
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding_service._load_model()
        embedding_service._load_model()

        mock_encoder_class.from_hparams.assert_called_once()

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_load_model_failure(self, mock_encoder_class, embedding_service):
        """Test model loading failure."""
        mock_encoder_class.from_hparams.side_effect = Exception("Model loading failed")

        with pytest.raises(RuntimeError, match="Model loading failed"):
            embedding_service._load_model()

        assert not embedding_service._model_loaded
        assert embedding_service.model is None

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_success(self, mock_encoder_class, embedding_service, mock_model, one_second_sample):
        """Test successful embedding generation."""
        mock_encoder_class.from_hparams.return_value = mock_model

        embedding = embedding_service.extract(one_second_sample)

        assert isinstance(embedding, np.ndarray)
        assert embedding.shape == (192,)
        assert embedding_service._model_loaded

        batch = mock_model.encode_batch.call_args[0][0]
        assert tuple(batch.shape) == (1, 16000)

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_sample_too_short(self, mock_encoder_class, embedding_service, mock_model):
        """Test embedding generation with audio that's too short."""
        mock_encoder_class.from_hparams.return_value = mock_model
        sample = VoiceSample(waveform=np.zeros(1600, dtype=np.float32), sample_rate=16000)

        with pytest.raises(ValueError, match="Voice sample too short"):
            embedding_service.extract(sample)

        mock_encoder_class.from_hparams.assert_not_called()

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_resamples_to_16khz(self, mock_encoder_class, embedding_service, mock_model):
        """Test embedding generation with audio resampling."""
        mock_encoder_class.from_hparams.return_value = mock_model
        sample = VoiceSample(waveform=np.random.randn(44100).astype(np.float32), sample_rate=44100)

        embedding = embedding_service.extract(sample)

        assert embedding.shape == (192,)
        batch = mock_model.encode_batch.call_args[0][0]
        assert tuple(batch.shape) == (1, 16000)

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_unexpected_shape(self, mock_encoder_class, embedding_service, one_second_sample):
        model = Mock()
        model.encode_batch.return_value = torch.randn(1, 128)
        mock_encoder_class.from_hparams.return_value = model

        with pytest.raises(RuntimeError, match="Unexpected embedding shape"):
            embedding_service.extract(one_second_sample)

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_model_error_wrapped(self, mock_encoder_class, embedding_service, one_second_sample):
        model = Mock()
        model.encode_batch.side_effect = TypeError("bad input")
        mock_encoder_class.from_hparams.return_value = model

        with pytest.raises(RuntimeError, match="Embedding generation failed"):
            embedding_service.extract(one_second_sample)

    def test_validate_embedding_valid(self, embedding_service):
        """Test embedding validation with valid embedding."""
        embedding = np.random.randn(192)

        assert embedding_service.validate_embedding(embedding)

    def test_validate_embedding_wrong_type(self, embedding_service):
        """Test embedding validation with wrong type."""
        assert not embedding_service.validate_embedding([1, 2, 3])

    def test_validate_embedding_wrong_dimension(self, embedding_service):
        """Test embedding validation with wrong dimensions."""
        assert not embedding_service.validate_embedding(np.random.randn(128))

    def test_validate_embedding_2d_array(self, embedding_service):
        """Test embedding validation with 2D array."""
        assert not embedding_service.validate_embedding(np.random.randn(1, 192))

    def test_validate_embedding_nan_values(self, embedding_service):
        """Test embedding validation with NaN values."""
        embedding = np.random.randn(192)
        embedding[0] = np.nan

        assert not embedding_service.validate_embedding(embedding)

    def test_validate_embedding_all_zeros(self, embedding_service):
        """Test embedding validation with all zeros."""
        assert not embedding_service.validate_embedding(np.zeros(192))

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_rejects_nan_embedding(self, mock_encoder_class, embedding_service, one_second_sample):
        """Test that a degenerate model output is not returned as an embedding."""
        output = torch.randn(1, 192)
        output[0, 7] = float("nan")
        model = Mock()
        model.encode_batch.return_value = output
        mock_encoder_class.from_hparams.return_value = model

        with pytest.raises(RuntimeError, match="Invalid embedding"):
            embedding_service.extract(one_second_sample)

    @patch('voicepay.services.embedding_service.EncoderClassifier')
    def test_extract_rejects_zero_embedding(self, mock_encoder_class, embedding_service, one_second_sample):
        """Test that an all-zero model output is rejected."""
        model = Mock()
        model.encode_batch.return_value = torch.zeros(1, 192)
        mock_encoder_class.from_hparams.return_value = model

        with pytest.raises(RuntimeError, match="Invalid embedding"):
            embedding_service.extract(one_second_sample)
