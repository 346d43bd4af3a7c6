"""Profile change feed and the post-payment completion waiter.

ProfileChangeFeed yields profile snapshots for one user. It prefers a MongoDB
change stream and drops to polling when the stream cannot be opened (for
example on a standalone server) or fails part way through.
"""
import asyncio
import logging
from contextlib import aclosing
from typing import Optional, Dict, Any, AsyncIterator

from pymongo.errors import PyMongoError

from database import database
from models import OnboardingRoute

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0
COMPLETION_TIMEOUT_SECONDS = 30.0


class ProfileChangeFeed:

    def __init__(
        self,
        user_id: str,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        use_change_stream: bool = True,
    ):
        self.user_id = user_id
        self.poll_interval = poll_interval
        self.use_change_stream = use_change_stream
        self.mode: Optional[str] = None

    async def _fetch(self) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.profiles.find_one({"user_id": self.user_id}, {"_id": 0})

    def __aiter__(self) -> AsyncIterator[Optional[Dict[str, Any]]]:
        return self.snapshots()

    async def snapshots(self) -> AsyncIterator[Optional[Dict[str, Any]]]:
        if self.use_change_stream:
            db = database.get_db()
            pipeline = [{"$match": {"fullDocument.user_id": self.user_id}}]
            try:
                async with db.profiles.watch(pipeline, full_document="updateLookup") as stream:
                    self.mode = "change_stream"
                    # Read after the stream is open so no update falls between the two
                    yield await self._fetch()
                    async for change in stream:
                        document = change.get("fullDocument")
                        if document is not None:
                            document.pop("_id", None)
                            yield document
            except PyMongoError as e:
                logger.info(f"Profile change stream unavailable for user {self.user_id} - polling instead: {e}")

        self.mode = "polling"
        while True:
            yield await self._fetch()
            await asyncio.sleep(self.poll_interval)


async def wait_for_onboarding_completion(
    user_id: str,
    timeout: float = COMPLETION_TIMEOUT_SECONDS,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    feed: Optional[ProfileChangeFeed] = None,
) -> Dict[str, Any]:
    """Wait until the payment webhook has completed onboarding.

    Always resolves to main-app; `timed_out` tells the caller the webhook had
    not landed within the ceiling. Cancelling the calling task stops the wait.
    """
    feed = feed or ProfileChangeFeed(user_id, poll_interval=poll_interval)

    async def _wait() -> Optional[Dict[str, Any]]:
        async with aclosing(feed.snapshots()) as snapshots:
            async for profile in snapshots:
                if profile and profile.get("onboarding_completed_at"):
                    return profile
        return None

    try:
        profile = await asyncio.wait_for(_wait(), timeout=timeout)
        timed_out = False
    except asyncio.TimeoutError:
        logger.warning(f"Onboarding completion not observed within {timeout}s for user {user_id}")
        profile = None
        timed_out = True

    return {
        "route": OnboardingRoute.MAIN_APP,
        "timed_out": timed_out,
        "profile": profile,
        "feed_mode": feed.mode,
    }
