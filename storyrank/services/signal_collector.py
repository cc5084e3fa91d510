"""
Signal collector for the storyrank leaderboard engine.

Validates inbound domain events and applies them to the signal store:

- Unknown or malformed events are dropped and logged
- Replays are deduplicated by event id per user
- Events whose seq is not newer than the user's last seq are ignored
- Accepted events update the record atomically and emit exactly one
  SignalsChanged notification

Events submitted through ``submit`` are routed to a bounded queue shard
chosen by a stable hash of the user id. One worker drains each shard, so a
user's events keep their order while different shards run in parallel.
"""

import asyncio
import logging
import math
import zlib
from typing import Any, Callable, List, Mapping, Optional, Union

from storyrank.config import Config
from storyrank.constants import EventTypes, ScoringConstants
from storyrank.data_models.leaderboard import ApplyOutcome, SignalEvent, UserSignalRecord
from storyrank.services.base import BaseService
from storyrank.services.signal_store import SignalStore
from storyrank.utils.leaderboard_exceptions import (
    ConcurrentUpdateConflict, StaleEventError, ValidationError
)

logger = logging.getLogger(__name__)

SignalsChangedListener = Callable[[str], None]
EventInput = Union[SignalEvent, Mapping[str, Any]]


class SignalCollector(BaseService):
    """Applies validated events to the signal store, one user at a time."""

    def __init__(
        self,
        store: SignalStore,
        shards: int = None,
        queue_size: int = None
    ):
        super().__init__(store.database.session_factory)
        self.store = store
        self.shard_count = shards or Config.COLLECTOR_SHARDS
        self.queue_size = queue_size or Config.SHARD_QUEUE_SIZE
        self._listeners: List[SignalsChangedListener] = []
        self._queues: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []

    def subscribe(self, listener: SignalsChangedListener):
        """Register a callback invoked with the user id after each accepted event."""
        self._listeners.append(listener)

    # Sharded ingestion
    @property
    def running(self) -> bool:
        return bool(self._workers)

    def shard_for(self, user_id: str) -> int:
        """Stable shard index for a user (independent of PYTHONHASHSEED)."""
        return zlib.crc32(user_id.encode('utf-8')) % self.shard_count

    async def start(self):
        """Create shard queues and start one worker per shard."""
        if self.running:
            return
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.shard_count)]
        self._workers = [
            asyncio.create_task(self._worker(shard), name=f"signal-shard-{shard}")
            for shard in range(self.shard_count)
        ]
        logger.info(f"Signal collector started with {self.shard_count} shards")

    async def stop(self):
        """Drain queued events, then stop the workers."""
        if not self.running:
            return
        await self.drain()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queues = []
        logger.info("Signal collector stopped")

    async def drain(self):
        """Wait until every queued event has been applied."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def submit(self, raw: EventInput) -> Optional[ApplyOutcome]:
        """
        Queue an event on its user's shard.

        Waits while the shard is full. Malformed events are rejected here and
        never queued.

        Returns:
            ApplyOutcome.REJECTED for malformed events, None once queued
        """
        if not self.running:
            raise RuntimeError("Signal collector is not started")
        try:
            event = self._coerce(raw)
        except ValidationError as e:
            logger.warning(f"Dropping event: {e}")
            return ApplyOutcome.REJECTED
        await self._queues[self.shard_for(event.user_id)].put(event)
        return None

    async def _worker(self, shard: int):
        queue = self._queues[shard]
        while True:
            event = await queue.get()
            try:
                await self.apply(event)
            except Exception as e:
                # Keep the shard alive; one bad event must not stall its users
                logger.error(f"Shard {shard} failed to apply event {event.event_id}: {e}", exc_info=True)
            finally:
                queue.task_done()

    # Event application
    async def apply(self, raw: EventInput) -> ApplyOutcome:
        """Validate and apply one event. Never raises for rejected events."""
        try:
            event = self._coerce(raw)
        except ValidationError as e:
            logger.warning(f"Dropping event: {e}")
            return ApplyOutcome.REJECTED

        async with self.store.user_lock(event.user_id):
            current = self.store.get(event.user_id)

            if self.store.has_processed(event.user_id, event.event_id):
                logger.debug(f"Duplicate event {event.event_id} for user {event.user_id} ignored")
                return ApplyOutcome.DUPLICATE

            try:
                self._check_sequence(event, current)
            except StaleEventError as e:
                logger.info(str(e))
                return ApplyOutcome.STALE

            try:
                updated = self._apply_payload(current, event)
            except ValidationError as e:
                logger.warning(f"Dropping event: {e}")
                return ApplyOutcome.REJECTED

            async def commit_record():
                return await self.store.commit(updated, event)

            try:
                stored = await self.execute_with_retry(
                    commit_record,
                    retry_on=(ConcurrentUpdateConflict,)
                )
            except ConcurrentUpdateConflict as e:
                logger.error(f"Giving up on event {event.event_id}: {e}")
                return ApplyOutcome.FAILED

            if not stored:
                return ApplyOutcome.DUPLICATE

        self._emit(event.user_id)
        return ApplyOutcome.ACCEPTED

    @staticmethod
    def _coerce(raw: EventInput) -> SignalEvent:
        if isinstance(raw, SignalEvent):
            return raw
        return SignalEvent.from_dict(raw)

    @staticmethod
    def _check_sequence(event: SignalEvent, current: Optional[UserSignalRecord]):
        last_seq = current.last_event_seq if current else 0
        if event.seq <= last_seq:
            raise StaleEventError(event.user_id, event.seq, last_seq)

    def _apply_payload(self, current: Optional[UserSignalRecord], event: SignalEvent) -> UserSignalRecord:
        """Build the next record version for an accepted event."""
        if current is None:
            current = UserSignalRecord(
                user_id=event.user_id,
                account_created_at=event.account_created_at or event.timestamp
            )

        changes = {}
        payload = event.payload

        if event.type == EventTypes.STORY_PUBLISHED:
            changes['total_stories'] = current.total_stories + 1

        elif event.type == EventTypes.STORY_UNPUBLISHED:
            changes['total_stories'] = current.total_stories - 1

        elif event.type == EventTypes.VOTE_CAST:
            changes.update(self._vote_changes(current, event))

        elif event.type == EventTypes.FOLLOW_CHANGED:
            following = payload.get('following')
            if not isinstance(following, bool):
                raise ValidationError("FollowChanged requires boolean 'following'", event.event_id)
            changes['follower_count'] = current.follower_count + (1 if following else -1)

        elif event.type == EventTypes.VIEW_RECORDED:
            count = payload.get('count', 1)
            if isinstance(count, bool) or not isinstance(count, int) or count < 1:
                raise ValidationError("ViewRecorded 'count' must be a positive integer", event.event_id)
            changes['total_views'] = current.total_views + count

        last_activity = current.last_activity_at
        if last_activity is None or event.timestamp > last_activity:
            last_activity = event.timestamp

        return current.with_changes(
            last_event_seq=event.seq,
            last_activity_at=last_activity,
            **changes
        )

    @staticmethod
    def _vote_changes(current: UserSignalRecord, event: SignalEvent) -> dict:
        """Move one vote from previousVote to vote, and swap ratings."""
        payload = event.payload
        vote = payload.get('vote', EventTypes.VOTE_NONE)
        previous = payload.get('previousVote', EventTypes.VOTE_NONE)
        if vote not in EventTypes.VOTES or previous not in EventTypes.VOTES:
            raise ValidationError(
                f"VoteCast votes must be one of {sorted(EventTypes.VOTES)}", event.event_id
            )

        rating = _rating(payload.get('rating'), 'rating', event.event_id)
        previous_rating = _rating(payload.get('previousRating'), 'previousRating', event.event_id)

        likes = (vote == EventTypes.VOTE_LIKE) - (previous == EventTypes.VOTE_LIKE)
        dislikes = (vote == EventTypes.VOTE_DISLIKE) - (previous == EventTypes.VOTE_DISLIKE)

        return {
            'total_likes': current.total_likes + likes,
            'total_dislikes': current.total_dislikes + dislikes,
            'rating_sum': current.rating_sum + (rating or 0.0) - (previous_rating or 0.0),
            'rating_count': current.rating_count
                + (rating is not None) - (previous_rating is not None),
        }

    def _emit(self, user_id: str):
        for listener in self._listeners:
            try:
                listener(user_id)
            except Exception as e:
                logger.error(f"SignalsChanged listener failed for user {user_id}: {e}", exc_info=True)


def _rating(value: Any, name: str, event_id: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError(f"VoteCast '{name}' must be a number", event_id)
    if not ScoringConstants.MIN_RATING <= value <= ScoringConstants.MAX_RATING:
        raise ValidationError(
            f"VoteCast '{name}' must be between {ScoringConstants.MIN_RATING} and {ScoringConstants.MAX_RATING}",
            event_id
        )
    return float(value)
