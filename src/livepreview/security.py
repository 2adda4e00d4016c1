"""Webhook signature checks and write rate limiting for the control API."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional

from .errors import SecurityError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    """Raise ``SecurityError`` unless ``signature`` matches ``body``.

    With no secret configured every request is accepted.
    """
    if not secret:
        return
    if not signature:
        raise SecurityError("Missing webhook signature")
    expected = compute_signature(secret, body).encode("utf-8")
    provided = signature.strip().encode("utf-8")
    if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
        raise SecurityError("Invalid webhook signature")


class RateLimiter:
    """Token bucket rate limiter."""

    def __init__(
        self,
        requests_per_minute: int = 25,
        burst_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = max(1, int(requests_per_minute))
        self.burst_size = burst_size if burst_size is not None else self.requests_per_minute
        self._clock = clock
        self._buckets: Dict[str, Dict[str, float]] = {}
        self._lock = Lock()

    def _get_bucket(self, key: str) -> Dict[str, float]:
        """Get or create a token bucket for a key, refilled up to now."""
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = {"tokens": float(self.burst_size), "last_update": now}
            self._buckets[key] = bucket
        elapsed = now - bucket["last_update"]
        refill = elapsed * (self.requests_per_minute / 60.0)
        bucket["tokens"] = min(float(self.burst_size), bucket["tokens"] + refill)
        bucket["last_update"] = now
        return bucket

    def consume(self, key: str) -> bool:
        """Try to consume a token. Returns True if allowed."""
        with self._lock:
            bucket = self._get_bucket(key)
            if bucket["tokens"] >= 1.0:
                bucket["tokens"] -= 1.0
                return True
            logger.warning("Rate limit exceeded for %s", key)
            return False

    def get_wait_time(self, key: str) -> float:
        """Get seconds to wait before next request is allowed."""
        with self._lock:
            bucket = self._get_bucket(key)
        if bucket["tokens"] >= 1.0:
            return 0.0
        return (1.0 - bucket["tokens"]) / (self.requests_per_minute / 60.0)
