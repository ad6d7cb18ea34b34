"""
Registry of device fingerprints known for each user.
"""

import hashlib
import json
import logging
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from voicepay.models.internal_models import DeviceFingerprint

logger = logging.getLogger(__name__)


def fingerprint(components: Mapping[str, str]) -> DeviceFingerprint:
    """
    Derive a fingerprint from device characteristics.

    Components (user agent, screen size, timezone, language, ...) are hashed
    as canonical JSON, so key order does not change the result.
    """
    normalized = {str(k): str(v) for k, v in components.items()}
    encoded = json.dumps(normalized, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return DeviceFingerprint(hash=hashlib.sha256(encoded).hexdigest(), components=normalized)


class DeviceFingerprintRegistry:
    """Known (user, device) pairs. An unknown pair raises risk but never denies."""

    def __init__(
        self,
        device_ttl_seconds: float = 90 * 24 * 3600.0,
        clock: Callable[[], float] = time.time
    ):
        self.device_ttl_seconds = device_ttl_seconds
        self._clock = clock
        self._devices: Dict[str, Dict[str, DeviceFingerprint]] = {}
        self._lock = threading.Lock()

    def is_known(self, user_id: str, device_hash: Optional[str]) -> bool:
        if not device_hash:
            return False
        with self._lock:
            return device_hash in self._devices.get(user_id, {})

    def register(
        self,
        user_id: str,
        device_hash: str,
        components: Optional[Mapping[str, str]] = None
    ) -> DeviceFingerprint:
        """Record a device for ``user_id``, refreshing ``last_seen`` if already known."""
        now = self._clock()
        with self._lock:
            devices = self._devices.setdefault(user_id, {})
            device = devices.get(device_hash)
            if device is None:
                device = DeviceFingerprint(
                    hash=device_hash,
                    components=dict(components or {}),
                    user_id=user_id,
                    first_seen=now,
                    last_seen=now
                )
                devices[device_hash] = device
                logger.info(f"Registered new device {device_hash[:12]} for user {user_id}")
            else:
                device.last_seen = now
        return device

    def devices_for(self, user_id: str) -> int:
        with self._lock:
            return len(self._devices.get(user_id, {}))

    def forget(self, user_id: str) -> bool:
        with self._lock:
            return self._devices.pop(user_id, None) is not None

    def prune(self, now: Optional[float] = None) -> int:
        """Drop devices unseen for longer than ``device_ttl_seconds``."""
        now = self._clock() if now is None else now
        removed = 0
        with self._lock:
            for user_id in list(self._devices.keys()):
                devices = self._devices[user_id]
                for device_hash in [h for h, d in devices.items() if now - d.last_seen > self.device_ttl_seconds]:
                    del devices[device_hash]
                    removed += 1
                if not devices:
                    del self._devices[user_id]
        return removed

    def reset(self) -> None:
        with self._lock:
            self._devices.clear()
