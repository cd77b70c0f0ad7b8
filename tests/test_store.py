# tests/test_store.py
"""
Challenge Store Tests

Tests for:
- In-memory put/get/delete/sweep
- Compare-and-delete and attempt counting bound to a challenge id
- Redis hash layout and key TTL (mocked client)
- Store factory selection
- Background sweeper loop

Run with: pytest tests/test_store.py -v
"""

import asyncio
from contextlib import suppress
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from watercan.accounts.models import Challenge
from watercan.accounts.store import (
    DELETE_IF_MATCH_SCRIPT,
    INCREMENT_IF_MATCH_SCRIPT,
    InMemoryChallengeStore,
    RedisChallengeStore,
    get_challenge_store,
    run_sweeper,
)


def make_challenge(identifier, issued_at, ttl=600, attempts=0):
    return Challenge(
        identifier=identifier,
        secret_hash="ab" * 32,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=ttl),
        attempts=attempts,
    )


# ============================================================
# In-Memory Store
# ============================================================

class TestInMemoryStore:
    """Tests for InMemoryChallengeStore."""

    def test_put_get_delete(self, store, clock):
        challenge = make_challenge("9876543210", clock())

        store.put("9876543210", challenge)
        assert store.get("9876543210").challenge_id == challenge.challenge_id

        store.delete("9876543210")
        assert store.get("9876543210") is None

    def test_delete_missing_is_noop(self, store):
        store.delete("9876543210")
        assert len(store) == 0

    def test_get_returns_copy(self, store, clock):
        store.put("9876543210", make_challenge("9876543210", clock()))

        fetched = store.get("9876543210")
        fetched.attempts = 3

        assert store.get("9876543210").attempts == 0

    def test_put_replaces(self, store, clock):
        first = make_challenge("9876543210", clock())
        second = make_challenge("9876543210", clock())
        store.put("9876543210", first)
        store.put("9876543210", second)

        assert len(store) == 1
        assert store.get("9876543210").challenge_id == second.challenge_id

    def test_delete_if_match(self, store, clock):
        challenge = make_challenge("9876543210", clock())
        store.put("9876543210", challenge)

        assert store.delete_if_match("9876543210", "some-other-id") is False
        assert store.get("9876543210") is not None

        assert store.delete_if_match("9876543210", challenge.challenge_id) is True
        assert store.delete_if_match("9876543210", challenge.challenge_id) is False
        assert store.get("9876543210") is None

    def test_increment_attempts(self, store, clock):
        challenge = make_challenge("9876543210", clock())
        store.put("9876543210", challenge)

        assert store.increment_attempts("9876543210", challenge.challenge_id) == 1
        assert store.increment_attempts("9876543210", challenge.challenge_id) == 2
        assert store.get("9876543210").attempts == 2

    def test_increment_attempts_ignores_replaced_challenge(self, store, clock):
        first = make_challenge("9876543210", clock())
        store.put("9876543210", first)
        store.put("9876543210", make_challenge("9876543210", clock()))

        assert store.increment_attempts("9876543210", first.challenge_id) is None
        assert store.increment_attempts("1111111111", first.challenge_id) is None
        assert store.get("9876543210").attempts == 0

    def test_sweep_removes_only_expired(self, store, clock):
        store.put("1111111111", make_challenge("1111111111", clock(), ttl=60))
        store.put("2222222222", make_challenge("2222222222", clock(), ttl=600))
        clock.advance(120)

        assert store.sweep(clock()) == 1
        assert store.get("1111111111") is None
        assert store.get("2222222222") is not None

    def test_sweep_keeps_challenge_at_expiry_instant(self, store, clock):
        store.put("1111111111", make_challenge("1111111111", clock(), ttl=60))
        clock.advance(60)

        assert store.sweep(clock()) == 0
        assert len(store) == 1


# ============================================================
# Redis Store
# ============================================================

class TestRedisStore:
    """Tests for RedisChallengeStore against a mocked client."""

    def test_put_writes_hash_with_ttl(self, clock):
        client = MagicMock()
        pipe = client.pipeline.return_value
        store = RedisChallengeStore(client, clock=clock)
        challenge = make_challenge("9876543210", clock(), ttl=600)

        store.put("9876543210", challenge)

        key = "otp:challenge:9876543210"
        pipe.delete.assert_called_once_with(key)
        pipe.hset.assert_called_once_with(key, mapping=challenge.to_mapping())
        pipe.expire.assert_called_once_with(key, 600)
        pipe.execute.assert_called_once()

    def test_put_expired_challenge_gets_minimum_ttl(self, clock):
        client = MagicMock()
        store = RedisChallengeStore(client, clock=clock)
        challenge = make_challenge("9876543210", clock(), ttl=10)
        clock.advance(30)

        store.put("9876543210", challenge)

        client.pipeline.return_value.expire.assert_called_once_with("otp:challenge:9876543210", 1)

    def test_get_decodes_mapping(self, clock):
        challenge = make_challenge("9876543210", clock(), attempts=2)
        raw = {k.encode(): v.encode() for k, v in challenge.to_mapping().items()}
        client = MagicMock()
        client.hgetall.return_value = raw

        fetched = RedisChallengeStore(client, clock=clock).get("9876543210")

        client.hgetall.assert_called_once_with("otp:challenge:9876543210")
        assert fetched == challenge

    def test_get_missing(self, clock):
        client = MagicMock()
        client.hgetall.return_value = {}
        assert RedisChallengeStore(client, clock=clock).get("9876543210") is None

    def test_delete_and_sweep(self, clock):
        client = MagicMock()
        store = RedisChallengeStore(client, clock=clock)

        store.delete("9876543210")

        client.delete.assert_called_once_with("otp:challenge:9876543210")
        assert store.sweep(clock()) == 0

    def test_delete_if_match_runs_script(self, clock):
        client = MagicMock()
        client.eval.side_effect = [1, 0]
        store = RedisChallengeStore(client, clock=clock)

        assert store.delete_if_match("9876543210", "abc") is True
        assert store.delete_if_match("9876543210", "abc") is False
        client.eval.assert_called_with(DELETE_IF_MATCH_SCRIPT, 1, "otp:challenge:9876543210", "abc")

    def test_increment_attempts_runs_script(self, clock):
        client = MagicMock()
        client.eval.side_effect = [3, -1]
        store = RedisChallengeStore(client, clock=clock)

        assert store.increment_attempts("9876543210", "abc") == 3
        assert store.increment_attempts("9876543210", "abc") is None
        client.eval.assert_called_with(INCREMENT_IF_MATCH_SCRIPT, 1, "otp:challenge:9876543210", "abc")


# ============================================================
# Factory
# ============================================================

class TestStoreFactory:
    """Tests for get_challenge_store."""

    def test_default_is_memory(self):
        assert isinstance(get_challenge_store(), InMemoryChallengeStore)

    def test_unknown_backend_falls_back(self):
        with patch.dict("os.environ", {"OTP_STORE": "filesystem"}):
            assert isinstance(get_challenge_store(), InMemoryChallengeStore)

    def test_redis_backend(self):
        env = {"OTP_STORE": "redis", "REDIS_URL": "redis://cache:6379/2"}
        with patch.dict("os.environ", env), patch("redis.Redis.from_url") as from_url:
            store = get_challenge_store()

        assert isinstance(store, RedisChallengeStore)
        from_url.assert_called_once_with("redis://cache:6379/2", decode_responses=True)


# ============================================================
# Sweeper
# ============================================================

class TestSweeper:
    """Tests for the background sweeper coroutine."""

    def test_sweeper_removes_expired_and_survives_errors(self, clock):
        store = InMemoryChallengeStore()
        store.put("1111111111", make_challenge("1111111111", clock(), ttl=60))
        clock.advance(120)

        failing = MagicMock()
        failing.sweep.side_effect = RuntimeError("boom")

        async def scenario():
            tasks = [
                asyncio.create_task(run_sweeper(store, 0, clock)),
                asyncio.create_task(run_sweeper(failing, 0, clock)),
            ]
            await asyncio.sleep(0.05)
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task
            return tasks

        tasks = asyncio.run(scenario())

        assert len(store) == 0
        assert failing.sweep.call_count > 1
        assert all(task.cancelled() for task in tasks)
