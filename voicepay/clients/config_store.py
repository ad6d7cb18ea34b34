"""
Encrypted JSON file holding runtime security-config overrides.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from voicepay.services.encryption_service import EncryptionError, EncryptionService

logger = logging.getLogger(__name__)


class ConfigStoreError(Exception):
    """Raised when overrides cannot be read or written."""
    pass


class JsonFileConfigStore:
    """Stores one encrypted override mapping per file, replaced atomically."""

    def __init__(self, path: str, cipher: EncryptionService):
        self.path = Path(path)
        self.cipher = cipher

    def load(self) -> Dict[str, Any]:
        """Saved overrides, or an empty mapping if nothing was saved yet."""
        if not self.path.exists():
            return {}

        try:
            token = self.path.read_text(encoding="utf-8").strip()
            data = self.cipher.decrypt(token)
        except OSError as e:
            logger.error(f"Failed to read config store {self.path}: {e}")
            raise ConfigStoreError(f"Failed to read config store: {e}")
        except EncryptionError as e:
            logger.error(f"Failed to decrypt config store {self.path}: {e}")
            raise ConfigStoreError(f"Failed to decrypt config store: {e}")

        if not isinstance(data, dict):
            raise ConfigStoreError("Config store does not contain a mapping")
        return data

    def save(self, overrides: Dict[str, Any]) -> None:
        try:
            token = self.cipher.encrypt(overrides)
        except EncryptionError as e:
            raise ConfigStoreError(f"Failed to encrypt config overrides: {e}")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(token)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write config store {self.path}: {e}")
            raise ConfigStoreError(f"Failed to write config store: {e}")

        logger.info(f"Saved {len(overrides)} config overrides to {self.path}")
