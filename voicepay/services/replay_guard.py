"""
Replay detection for voice payment commands.
"""

import hashlib
import json
import logging
import threading
import time
from typing import Callable, Dict, Optional

from voicepay.config import SecurityConfig
from voicepay.models.command_models import ParsedCommand
from voicepay.models.internal_models import ReplayEntry

logger = logging.getLogger(__name__)


def compute_command_hash(command: ParsedCommand, user_id: str) -> str:
    """
    Stable SHA-256 over the fields that make two commands the same transfer.

    The parse timestamp is not hashed, so the same utterance resubmitted a
    moment later yields the same value.
    """
    payload = {
        "user_id": user_id,
        "type": command.type.value,
        "action": command.action,
        "amount": str(command.amount) if command.amount is not None else None,
        "currency": command.currency,
        "recipient_address": command.recipient_address or command.recipient,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ReplayGuard:
    """Seen-hash cache with a replay window and opportunistic pruning."""

    PRUNE_MULTIPLIER = 10

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or SecurityConfig()
        self._clock = clock
        self._entries: Dict[str, ReplayEntry] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    @property
    def window_seconds(self) -> float:
        return self.config.replay_window_ms / 1000.0

    def is_replay(self, command_hash: str) -> bool:
        """
        Report whether ``command_hash`` was seen within the replay window.

        Side effect: a hash that is not a replay is recorded with the
        current time. A replay leaves the first sighting untouched, so
        the window is measured from the accepted submission.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(command_hash)
            if entry is not None and now - entry.last_seen < self.window_seconds:
                logger.warning(f"Replay detected for command hash {command_hash[:12]}")
                return True
            self._entries[command_hash] = ReplayEntry(command_hash=command_hash, last_seen=now)
            should_prune = now - self._last_prune >= self.window_seconds
            if should_prune:
                self._last_prune = now
                self._prune_locked(now)
        return False

    def _prune_locked(self, now: float) -> int:
        max_age = self.window_seconds * self.PRUNE_MULTIPLIER
        stale = [h for h, entry in self._entries.items() if now - entry.last_seen > max_age]
        for command_hash in stale:
            del self._entries[command_hash]
        if stale:
            logger.debug(f"Pruned {len(stale)} replay entries")
        return len(stale)

    def release(self, command_hash: str) -> bool:
        """Forget ``command_hash`` so a resubmission is not reported as a replay."""
        with self._lock:
            return self._entries.pop(command_hash, None) is not None

    def prune(self, now: Optional[float] = None) -> int:
        """Drop hashes older than ten replay windows."""
        now = self._clock() if now is None else now
        with self._lock:
            return self._prune_locked(now)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
