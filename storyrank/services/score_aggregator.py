"""
Score aggregator for the storyrank leaderboard engine.

Turns a user's signal tallies into a single composite score:

    score = w1*stories + w2*averageRating*stories + w3*log1p(views)
            + w4*followers - w5*dislikes

Key Features:
- Pure scoring function of the current record (arrival order never matters)
- Per-user debounce: a burst of SignalsChanged for one user coalesces into a
  single recomputation that reads the latest record
- Bounded deferral: a user signalled continuously is still recomputed within
  the maximum wait
- Weights overridable at runtime through the configuration service
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from storyrank.config import Config
from storyrank.constants import ConfigKeys, ScoringConstants
from storyrank.data_models.leaderboard import (
    CompositeScore, ScoreChanged, UserSignalRecord, utcnow
)
from storyrank.services.signal_store import SignalStore

logger = logging.getLogger(__name__)

ScoreChangedListener = Callable[[ScoreChanged], None]


@dataclass(frozen=True)
class ScoreWeights:
    stories: float = ScoringConstants.WEIGHT_STORIES
    rating: float = ScoringConstants.WEIGHT_RATING
    views: float = ScoringConstants.WEIGHT_VIEWS
    followers: float = ScoringConstants.WEIGHT_FOLLOWERS
    dislikes: float = ScoringConstants.WEIGHT_DISLIKES

    @classmethod
    def from_config(cls, config_service) -> "ScoreWeights":
        """Read `scoring.weight_*` overrides, falling back to the defaults."""
        if config_service is None:
            return cls()
        return cls(
            stories=float(config_service.get(ConfigKeys.WEIGHT_STORIES, cls.stories)),
            rating=float(config_service.get(ConfigKeys.WEIGHT_RATING, cls.rating)),
            views=float(config_service.get(ConfigKeys.WEIGHT_VIEWS, cls.views)),
            followers=float(config_service.get(ConfigKeys.WEIGHT_FOLLOWERS, cls.followers)),
            dislikes=float(config_service.get(ConfigKeys.WEIGHT_DISLIKES, cls.dislikes)),
        )


def composite_score(record: UserSignalRecord, weights: ScoreWeights) -> float:
    """Weighted score of a record's clamped tallies, rounded for stable comparison."""
    score = (
        weights.stories * record.stories
        + weights.rating * record.average_rating * record.stories
        + weights.views * math.log1p(record.views)
        + weights.followers * record.followers
        - weights.dislikes * record.dislikes
    )
    return round(score, ScoringConstants.SCORE_PRECISION)


class ScoreAggregator:
    """Recomputes composite scores on signal changes and publishes ScoreChanged."""

    def __init__(
        self,
        store: SignalStore,
        config_service=None,
        debounce_seconds: float = None,
        max_wait_seconds: float = None
    ):
        self.store = store
        self.config_service = config_service
        self.debounce_seconds = Config.DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self.max_wait_seconds = Config.DEBOUNCE_MAX_WAIT_SECONDS if max_wait_seconds is None else max_wait_seconds
        self._listeners: List[ScoreChangedListener] = []
        self._timers: Dict[str, asyncio.Task] = {}
        self._first_signal: Dict[str, float] = {}

    def subscribe(self, listener: ScoreChangedListener):
        """Register a callback invoked with every published ScoreChanged."""
        self._listeners.append(listener)

    @property
    def weights(self) -> ScoreWeights:
        return ScoreWeights.from_config(self.config_service)

    @property
    def pending(self) -> int:
        """Number of users with a scheduled recomputation."""
        return len(self._timers)

    def compute(self, record: UserSignalRecord) -> CompositeScore:
        """Pure scoring of one record snapshot."""
        return CompositeScore(
            user_id=record.user_id,
            score=composite_score(record, self.weights),
            computed_at=utcnow(),
            epoch=record.last_event_seq
        )

    def on_signals_changed(self, user_id: str):
        """
        Schedule a debounced recomputation for a user.

        A pending timer is cancelled and rescheduled, so only the latest state is
        scored. The delay shrinks as the first unserved signal ages, which caps
        the total deferral at ``max_wait_seconds``.
        """
        if self.debounce_seconds <= 0:
            self.recompute(user_id)
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        first = self._first_signal.setdefault(user_id, now)
        delay = min(self.debounce_seconds, max(0.0, first + self.max_wait_seconds - now))

        existing = self._timers.pop(user_id, None)
        if existing is not None:
            existing.cancel()

        self._timers[user_id] = loop.create_task(
            self._recompute_after(user_id, delay), name=f"score-debounce-{user_id}"
        )

    async def _recompute_after(self, user_id: str, delay: float):
        await asyncio.sleep(delay)
        # No awaits below: a newer signal cannot interleave with the commit
        if self._timers.get(user_id) is not asyncio.current_task():
            return
        self._timers.pop(user_id, None)
        self._first_signal.pop(user_id, None)
        try:
            self.recompute(user_id)
        except Exception as e:
            logger.error(f"Debounced recomputation failed for user {user_id}: {e}", exc_info=True)

    def recompute(self, user_id: str) -> Optional[ScoreChanged]:
        """Score the user's current record now and publish the change."""
        record = self.store.get(user_id)
        if record is None:
            logger.debug(f"No signal record for user {user_id}, nothing to score")
            return None

        composite = self.compute(record)
        change = ScoreChanged(
            composite=composite,
            tie_break_key=record.tie_break_key,
            total_stories=record.stories,
            follower_count=record.followers
        )
        logger.debug(f"Score for user {user_id} is {composite.score} at seq {composite.epoch}")

        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(f"ScoreChanged listener failed for user {user_id}: {e}", exc_info=True)
        return change

    async def flush(self) -> int:
        """Run every pending recomputation immediately. Returns how many ran."""
        pending = list(self._timers.items())
        self._timers.clear()
        self._first_signal.clear()
        for _, task in pending:
            task.cancel()
        await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
        for user_id, _ in pending:
            self.recompute(user_id)
        return len(pending)

    async def close(self):
        """Cancel pending timers without recomputing."""
        tasks = list(self._timers.values())
        self._timers.clear()
        self._first_signal.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
