"""
Tests for sync pass claims (in-process guard and Redis lease)
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest
import redis

from calsync.exceptions import ConcurrencyError, SyncInProgressError
from calsync.services.sync_guard import (
    COMPARE_AND_DELETE,
    COMPARE_AND_PEXPIRE,
    InMemorySyncGuard,
    RedisSyncLease,
)


class TestInMemorySyncGuard:

    async def test_second_claim_fails_fast(self):
        guard = InMemorySyncGuard()

        async with guard.claim("owner-1:work"):
            assert guard.is_active("owner-1:work")
            with pytest.raises(SyncInProgressError) as exc_info:
                async with guard.claim("owner-1:work"):
                    pass
            assert exc_info.value.key == "owner-1:work"

            # other keys are independent
            async with guard.claim("owner-1:home"):
                pass

        assert not guard.is_active("owner-1:work")

    async def test_claim_released_on_error(self):
        guard = InMemorySyncGuard()

        with pytest.raises(RuntimeError):
            async with guard.claim("k"):
                raise RuntimeError("pass failed")

        assert not guard.is_active("k")
        async with guard.claim("k"):
            pass


@pytest.fixture
def redis_client():
    return MagicMock(spec=redis.Redis)


class TestRedisSyncLease:

    async def test_acquire_and_release(self, redis_client):
        redis_client.set.return_value = True
        lease = RedisSyncLease(redis_client, ttl_ms=5000)

        async with lease.claim("owner-1:work"):
            pass

        args, kwargs = redis_client.set.call_args
        assert args[0] == "calsync:sync_lease:owner-1:work"
        assert kwargs == {"nx": True, "px": 5000}
        token = args[1]
        redis_client.eval.assert_called_once_with(
            COMPARE_AND_DELETE, 1, "calsync:sync_lease:owner-1:work", token
        )

    async def test_held_lease_raises(self, redis_client):
        redis_client.set.return_value = None
        lease = RedisSyncLease(redis_client)

        with pytest.raises(SyncInProgressError):
            async with lease.claim("owner-1:work"):
                pass

        redis_client.eval.assert_not_called()

    async def test_waits_before_giving_up(self, redis_client):
        redis_client.set.side_effect = [None, None, True]
        lease = RedisSyncLease(redis_client, wait_attempts=3)

        with patch("calsync.services.sync_guard.asyncio.sleep", new=AsyncMock()) as sleep:
            async with lease.claim("k"):
                pass

        assert redis_client.set.call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.05, 0.1]

    async def test_release_failure_is_logged_not_raised(self, redis_client, caplog):
        redis_client.set.return_value = True
        redis_client.eval.side_effect = redis.ConnectionError("gone")

        async with RedisSyncLease(redis_client).claim("k"):
            pass

        assert "Failed to release sync lease" in caplog.text

    async def test_lease_is_renewed_while_held(self, redis_client):
        redis_client.set.return_value = True
        redis_client.eval.return_value = 1
        lease = RedisSyncLease(redis_client, ttl_ms=5000, renew_interval=0.01)

        async with lease.claim("k") as claim:
            await asyncio.sleep(0.05)
            claim.ensure_held()

        token = redis_client.set.call_args.args[1]
        assert call(COMPARE_AND_PEXPIRE, 1, "calsync:sync_lease:k", token, 5000) in redis_client.eval.call_args_list
        assert redis_client.eval.call_args_list[-1] == call(COMPARE_AND_DELETE, 1, "calsync:sync_lease:k", token)

    async def test_lost_lease_is_reported(self, redis_client):
        redis_client.set.return_value = True
        # another worker now holds the key, so compare-and-extend finds a different token
        redis_client.eval.return_value = 0

        async with RedisSyncLease(redis_client).claim("k") as claim:
            with pytest.raises(ConcurrencyError):
                claim.ensure_held()
            assert claim.lost

    async def test_renewal_failure_is_logged_not_raised(self, redis_client, caplog):
        redis_client.set.return_value = True
        errors = iter([redis.ConnectionError("blip")])

        def eval_script(*args):
            error = next(errors, None)
            if error:
                raise error
            return 1

        redis_client.eval.side_effect = eval_script
        lease = RedisSyncLease(redis_client, renew_interval=0.01)

        async with lease.claim("k") as claim:
            await asyncio.sleep(0.03)
            assert not claim.lost

        assert "Failed to renew sync lease" in caplog.text
