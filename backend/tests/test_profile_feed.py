"""
Unit tests: the post-payment waiter is bounded, resolves to main-app either way,
and the profile feed falls back to polling when change streams are unavailable.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from conftest import make_profile
from models import OnboardingRoute
from services.profile_feed import (
    COMPLETION_TIMEOUT_SECONDS,
    POLL_INTERVAL_SECONDS,
    ProfileChangeFeed,
    wait_for_onboarding_completion,
)

USER_ID = "user-feed-000001"


def test_default_bounds():
    assert POLL_INTERVAL_SECONDS == 1.0
    assert COMPLETION_TIMEOUT_SECONDS == 30.0


@pytest.mark.asyncio
async def test_times_out_and_still_resolves_main_app(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID))

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await wait_for_onboarding_completion(USER_ID, timeout=0.2, poll_interval=0.05)
    elapsed = loop.time() - started

    assert result["route"] == OnboardingRoute.MAIN_APP
    assert result["timed_out"] is True
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_returns_as_soon_as_completion_lands(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID))

    async def _webhook_lands():
        await asyncio.sleep(0.1)
        await fake_db.profiles.update_one(
            {"user_id": USER_ID},
            {"$set": {"onboarding_completed_at": datetime.now(timezone.utc)}}
        )

    task = asyncio.create_task(_webhook_lands())
    result = await wait_for_onboarding_completion(USER_ID, timeout=5.0, poll_interval=0.02)
    await task

    assert result["timed_out"] is False
    assert result["route"] == OnboardingRoute.MAIN_APP
    assert result["profile"]["onboarding_completed_at"] is not None
    assert result["feed_mode"] == "polling"


@pytest.mark.asyncio
async def test_already_completed_returns_immediately(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID, onboarding_completed_at=datetime.now(timezone.utc)))
    result = await wait_for_onboarding_completion(USER_ID, timeout=0.5, poll_interval=10)
    assert result["timed_out"] is False


@pytest.mark.asyncio
async def test_wait_is_cancellable(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID))

    task = asyncio.create_task(wait_for_onboarding_completion(USER_ID, timeout=30.0, poll_interval=0.05))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


class _FakeChangeStream:
    def __init__(self, changes):
        self._changes = list(changes)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._changes:
            raise StopAsyncIteration
        return self._changes.pop(0)


@pytest.mark.asyncio
async def test_feed_uses_change_stream_when_available(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID))
    completed = make_profile(USER_ID, onboarding_completed_at=datetime.now(timezone.utc))
    completed["_id"] = "oid"
    fake_db.profiles.watch = lambda *a, **kw: _FakeChangeStream([{"fullDocument": completed}])

    feed = ProfileChangeFeed(USER_ID, poll_interval=0.01)
    result = await wait_for_onboarding_completion(USER_ID, timeout=1.0, feed=feed)

    assert result["timed_out"] is False
    assert result["feed_mode"] == "change_stream"
    assert "_id" not in result["profile"]


@pytest.mark.asyncio
async def test_feed_falls_back_to_polling(fake_db):
    await fake_db.profiles.insert_one(make_profile(USER_ID))

    feed = ProfileChangeFeed(USER_ID, poll_interval=0.01)
    snapshots = feed.snapshots()
    first = await snapshots.__anext__()
    await snapshots.aclose()

    assert first["user_id"] == USER_ID
    assert feed.mode == "polling"
