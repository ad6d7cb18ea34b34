"""
Fixed-window rate limiter keyed by user, device and network origin.

Every request is counted against up to three independent windows. Quotas are
the configured base for users, twice the base for devices and ten times the
base for origins. A request passes only when every supplied window is under
quota, and then all of them are incremented together.

Counters are guarded by a fixed pool of striped locks. Keys hash onto
stripes, and a multi-key operation takes its stripes in ascending order so two
requests can never deadlock on each other.
"""

import logging
import threading
import time
import zlib
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional, Tuple

from voicepay.config import SecurityConfig
from voicepay.models.internal_models import RateLimitWindow
from voicepay.models.security_models import RateLimitResult, RateLimitScope, SecurityErrorCode

logger = logging.getLogger(__name__)

SCOPE_MULTIPLIERS: Dict[RateLimitScope, int] = {
    RateLimitScope.USER: 1,
    RateLimitScope.DEVICE: 2,
    RateLimitScope.ORIGIN: 10,
}


class RateLimiter:
    """Sliding-reset request counters shared across concurrent requests."""

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        window_seconds: float = 3600.0,
        prune_factor: float = 24.0,
        lock_stripes: int = 64,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the rate limiter.

        Args:
            config: Security configuration providing ``rate_limit_per_hour``
            window_seconds: Window length; counters reset lazily once it elapses
            prune_factor: Idle windows older than ``window_seconds * prune_factor`` are dropped
            lock_stripes: Number of locks keys are striped across
            clock: Source of epoch seconds
        """
        self.config = config or SecurityConfig()
        self.window_seconds = window_seconds
        self.prune_factor = prune_factor
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._stripes = [threading.Lock() for _ in range(max(1, lock_stripes))]
        self._prune_lock = threading.Lock()
        self._last_prune = clock()

    @staticmethod
    def make_key(identity_key: str, scope: RateLimitScope) -> str:
        return f"{scope.value}:{identity_key}"

    def quota(self, scope: RateLimitScope) -> int:
        return self.config.rate_limit_per_hour * SCOPE_MULTIPLIERS[scope]

    def _stripe(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._stripes)

    def _window(self, key: str, now: float) -> RateLimitWindow:
        """Current window for ``key``, reset if it has elapsed. Caller holds the stripe lock."""
        window = self._windows.get(key)
        if window is None or window.expired(now):
            window = RateLimitWindow(
                key=key,
                count=0,
                window_start=now,
                window_size=self.window_seconds,
                last_seen=now
            )
            self._windows[key] = window
        return window

    def _result(
        self,
        user_window: RateLimitWindow,
        allowed: bool,
        exceeded_scope: Optional[RateLimitScope] = None
    ) -> RateLimitResult:
        limit = self.quota(RateLimitScope.USER)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - user_window.count),
            reset_at=user_window.reset_at,
            limit=limit,
            count=user_window.count,
            exceeded_scope=exceeded_scope,
            error_code=None if allowed else SecurityErrorCode.RATE_LIMIT_EXCEEDED
        )

    def check(self, identity_key: str, scope: RateLimitScope = RateLimitScope.USER) -> RateLimitResult:
        """
        Check one counter without consuming quota.

        ``remaining`` and ``reset_at`` describe the checked window.
        """
        key = self.make_key(identity_key, scope)
        now = self._clock()
        with self._stripes[self._stripe(key)]:
            window = self._window(key, now)
            limit = self.quota(scope)
            allowed = window.count < limit
            return RateLimitResult(
                allowed=allowed,
                remaining=max(0, limit - window.count),
                reset_at=window.reset_at,
                limit=limit,
                count=window.count,
                exceeded_scope=None if allowed else scope,
                error_code=None if allowed else SecurityErrorCode.RATE_LIMIT_EXCEEDED
            )

    def increment(self, identity_key: str, scope: RateLimitScope = RateLimitScope.USER) -> int:
        """Count one request against a single window. Returns the new count."""
        key = self.make_key(identity_key, scope)
        now = self._clock()
        with self._stripes[self._stripe(key)]:
            window = self._window(key, now)
            window.count += 1
            window.last_seen = now
            return window.count

    def check_and_increment(
        self,
        user_id: str,
        device_hash: Optional[str] = None,
        origin: Optional[str] = None
    ) -> RateLimitResult:
        """
        Atomically admit or reject one request across all supplied scopes.

        Args:
            user_id: Authenticated user identifier
            device_hash: Device fingerprint hash, if known
            origin: Hashed network origin (e.g. client IP), if known

        Returns:
            RateLimitResult for the user window. When rejected,
            ``exceeded_scope`` names the first scope over quota.
        """
        scoped: List[Tuple[RateLimitScope, str]] = [(RateLimitScope.USER, user_id)]
        if device_hash:
            scoped.append((RateLimitScope.DEVICE, device_hash))
        if origin:
            scoped.append((RateLimitScope.ORIGIN, origin))

        keys = [(scope, self.make_key(identity, scope)) for scope, identity in scoped]
        stripes = sorted({self._stripe(key) for _, key in keys})
        now = self._clock()

        with ExitStack() as stack:
            for index in stripes:
                stack.enter_context(self._stripes[index])

            windows = [(scope, self._window(key, now)) for scope, key in keys]
            user_window = windows[0][1]

            for scope, window in windows:
                if window.count >= self.quota(scope):
                    logger.warning(
                        f"Rate limit exceeded for {window.key}: {window.count}/{self.quota(scope)}"
                    )
                    return self._result(user_window, allowed=False, exceeded_scope=scope)

            for _, window in windows:
                window.count += 1
                window.last_seen = now

            result = self._result(user_window, allowed=True)

        self._maybe_prune(now)
        return result

    def usage_ratio(self, user_id: str) -> float:
        """Fraction of the user quota consumed in the current window."""
        key = self.make_key(user_id, RateLimitScope.USER)
        now = self._clock()
        with self._stripes[self._stripe(key)]:
            window = self._windows.get(key)
            count = 0 if window is None or window.expired(now) else window.count
        limit = self.quota(RateLimitScope.USER)
        if limit <= 0:
            return 1.0
        return count / limit

    def current_count(self, user_id: str) -> int:
        key = self.make_key(user_id, RateLimitScope.USER)
        now = self._clock()
        with self._stripes[self._stripe(key)]:
            window = self._windows.get(key)
            return 0 if window is None or window.expired(now) else window.count

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self.window_seconds:
            return
        if not self._prune_lock.acquire(blocking=False):
            return
        try:
            self._last_prune = now
            self.prune(now)
        finally:
            self._prune_lock.release()

    def prune(self, now: Optional[float] = None) -> int:
        """Drop windows idle for longer than ``window_seconds * prune_factor``."""
        now = self._clock() if now is None else now
        max_idle = self.window_seconds * self.prune_factor
        removed = 0
        for key in list(self._windows.keys()):
            with self._stripes[self._stripe(key)]:
                window = self._windows.get(key)
                if window is not None and now - window.last_seen > max_idle:
                    del self._windows[key]
                    removed += 1
        if removed:
            logger.debug(f"Pruned {removed} idle rate-limit windows")
        return removed

    def reset(self) -> None:
        """Forget every counter."""
        with ExitStack() as stack:
            for lock in self._stripes:
                stack.enter_context(lock)
            self._windows.clear()
        logger.info("Rate-limit state cleared")

    def __len__(self) -> int:
        return len(self._windows)
