# watercan/accounts/store.py
"""
Challenge storage.

This module provides:
- Abstract ChallengeStore interface (put/get/delete/sweep)
- InMemoryChallengeStore (single-instance default)
- RedisChallengeStore (shared across instances, survives restarts)
- run_sweeper() background coroutine

Concurrency:
- Store calls run on worker threads, so two requests for the same
  identifier can interleave between a get and a write.
- increment_attempts() and delete_if_match() only act on the challenge a
  caller actually read (matched by challenge_id) and do so atomically:
  under a lock in memory, in a Lua script on Redis.
- Issuance for the same identifier is last-write-wins; only the latest
  challenge is ever valid.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from watercan import config
from watercan.accounts.models import Challenge
from watercan.privacy_utils import mask_phone

log = logging.getLogger("watercan.otp_store")

KEY_PREFIX = "otp:challenge:"

# KEYS[1] = challenge key, ARGV[1] = expected challenge_id
DELETE_IF_MATCH_SCRIPT = """
if redis.call('HGET', KEYS[1], 'challenge_id') == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

INCREMENT_IF_MATCH_SCRIPT = """
if redis.call('HGET', KEYS[1], 'challenge_id') == ARGV[1] then
    return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
end
return -1
"""


class ChallengeStore(ABC):
    """Ephemeral per-identifier challenge state."""

    @abstractmethod
    def put(self, identifier: str, challenge: Challenge) -> None:
        """Store a challenge, replacing any existing one for the identifier."""

    @abstractmethod
    def get(self, identifier: str) -> Optional[Challenge]:
        """Return the challenge for the identifier, or None."""

    @abstractmethod
    def delete(self, identifier: str) -> None:
        """Remove the challenge for the identifier. Idempotent."""

    @abstractmethod
    def delete_if_match(self, identifier: str, challenge_id: str) -> bool:
        """
        Remove the challenge only if it is still ``challenge_id``.

        Returns:
            True if this call removed it. Of several concurrent callers at
            most one gets True.
        """

    @abstractmethod
    def increment_attempts(self, identifier: str, challenge_id: str) -> Optional[int]:
        """
        Add one failed attempt to the challenge if it is still ``challenge_id``.

        Returns:
            The new attempt count, or None if the challenge was replaced or
            removed.
        """

    @abstractmethod
    def sweep(self, now: datetime) -> int:
        """Remove every challenge with expires_at < now. Returns count removed."""


# ============================================================
# In-Memory Implementation
# ============================================================

class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local store.

    Challenges are lost on restart and not visible to other instances.
    """

    def __init__(self):
        self._challenges: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def put(self, identifier: str, challenge: Challenge) -> None:
        with self._lock:
            self._challenges[identifier] = challenge.model_copy()

    def get(self, identifier: str) -> Optional[Challenge]:
        with self._lock:
            challenge = self._challenges.get(identifier)
            return challenge.model_copy() if challenge else None

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._challenges.pop(identifier, None)

    def delete_if_match(self, identifier: str, challenge_id: str) -> bool:
        with self._lock:
            current = self._challenges.get(identifier)
            if current is None or current.challenge_id != challenge_id:
                return False
            del self._challenges[identifier]
            return True

    def increment_attempts(self, identifier: str, challenge_id: str) -> Optional[int]:
        with self._lock:
            current = self._challenges.get(identifier)
            if current is None or current.challenge_id != challenge_id:
                return None
            current.attempts += 1
            return current.attempts

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, c in self._challenges.items() if c.expires_at < now]
            for identifier in expired:
                del self._challenges[identifier]
        for identifier in expired:
            log.debug("Swept expired challenge for %s", mask_phone(identifier))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)


# ============================================================
# Redis Implementation
# ============================================================

class RedisChallengeStore(ChallengeStore):
    """
    Redis-backed store. Each challenge is a hash under
    ``otp:challenge:<identifier>`` with a key TTL equal to the remaining
    validity window, so Redis expires challenges on its own.
    """

    def __init__(self, client, clock: Optional[Callable[[], datetime]] = None):
        self.redis = client
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _key(identifier: str) -> str:
        return f"{KEY_PREFIX}{identifier}"

    def put(self, identifier: str, challenge: Challenge) -> None:
        key = self._key(identifier)
        ttl = max(int((challenge.expires_at - self._clock()).total_seconds()), 1)
        pipe = self.redis.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=challenge.to_mapping())
        pipe.expire(key, ttl)
        pipe.execute()

    def get(self, identifier: str) -> Optional[Challenge]:
        data = self.redis.hgetall(self._key(identifier))
        if not data:
            return None
        decoded = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        return Challenge.from_mapping(decoded)

    def delete(self, identifier: str) -> None:
        self.redis.delete(self._key(identifier))

    def delete_if_match(self, identifier: str, challenge_id: str) -> bool:
        removed = self.redis.eval(DELETE_IF_MATCH_SCRIPT, 1, self._key(identifier), challenge_id)
        return int(removed) == 1

    def increment_attempts(self, identifier: str, challenge_id: str) -> Optional[int]:
        attempts = int(self.redis.eval(INCREMENT_IF_MATCH_SCRIPT, 1, self._key(identifier), challenge_id))
        return attempts if attempts >= 0 else None

    def sweep(self, now: datetime) -> int:
        # Keys carry their own TTL.
        return 0


# ============================================================
# Factory
# ============================================================

def get_challenge_store() -> ChallengeStore:
    """
    Build the store selected by OTP_STORE.

    Backends:
    - "memory" (default): InMemoryChallengeStore
    - "redis": RedisChallengeStore on REDIS_URL
    """
    backend = config.get_otp_store_backend()

    if backend == "redis":
        import redis

        client = redis.Redis.from_url(config.get_redis_url(), decode_responses=True)
        log.info("Using Redis challenge store")
        return RedisChallengeStore(client)

    if backend != "memory":
        log.warning("Unknown OTP_STORE '%s', falling back to memory", backend)
    return InMemoryChallengeStore()


# ============================================================
# Background Sweep
# ============================================================

async def run_sweeper(
    store: ChallengeStore,
    interval_seconds: int,
    clock: Optional[Callable[[], datetime]] = None,
) -> None:
    """
    Sweep expired challenges every ``interval_seconds`` until cancelled.

    A failing sweep is logged and retried on the next tick.
    """
    clock = clock or (lambda: datetime.now(timezone.utc))
    log.info("Challenge sweeper started (every %ds)", interval_seconds)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = store.sweep(clock())
        except Exception as e:
            log.error("Challenge sweep failed: %s", str(e)[:100])
            continue
        if removed:
            log.info("Swept %d expired challenges", removed)
