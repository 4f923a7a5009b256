"""Webhook delivery ledger, Redis-based record of acknowledged events.

Security contract:
- Event ids are marked only AFTER the delivery was acknowledged with 200,
  so a failed delivery is always retried in full
- Key pattern: webhook:seen:{provider}:{event_id}, 24h TTL
- If Redis is down, fail open: the orders table's UNIQUE session id is the
  real idempotency guard, this only saves the line-item round trip
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"


class DeliveryLedger:
    """Tracks provider event ids that were already acknowledged."""

    def __init__(self, client: redis.Redis, provider: str = "stripe"):
        self._redis = client
        self._provider = provider

    @classmethod
    def from_url(cls, redis_url: str, provider: str = "stripe") -> DeliveryLedger:
        return cls(redis.from_url(redis_url, decode_responses=True), provider)

    def _key(self, event_id: str) -> str:
        return f"{_KEY_PREFIX}:{self._provider}:{event_id}"

    def is_duplicate(self, event_id: str) -> bool:
        """True if this event id was already acknowledged."""
        if not event_id:
            return False  # No ID = can't dedup, allow through
        try:
            seen = self._redis.exists(self._key(event_id))
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s/%s",
                self._provider,
                event_id,
                exc_info=True,
            )
            return False
        if seen:
            logger.info("Duplicate webhook delivery: %s/%s", self._provider, event_id)
            return True
        return False

    def mark_seen(self, event_id: str) -> None:
        """Record an acknowledged event id."""
        if not event_id:
            return
        try:
            self._redis.set(self._key(event_id), "1", ex=_DEDUP_TTL_SECONDS)
        except redis.RedisError:
            logger.warning("Failed to mark webhook as seen: %s/%s", self._provider, event_id)
