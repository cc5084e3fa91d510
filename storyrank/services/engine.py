"""
Leaderboard engine: the owned service instance behind the storyrank API.

Wires the pipeline

    event -> SignalCollector -> SignalStore -> ScoreAggregator -> RankIndex -> LeaderboardService

and owns the index rebuild. The rank index is verified at startup and then
periodically. When it reports corruption the engine goes degraded, keeps
serving the last good snapshot, and rebuilds the index by replaying every
persisted signal record (in user id order) through the aggregator. Failed
rebuilds are retried with backoff. Score changes that arrive while the engine
is not healthy are replayed once the new index is in place.

A change to any scoring weight rescores every user in one swap, so the index
never mixes scores computed under different weights.
"""

import asyncio
import logging
from typing import Any, Iterable, List, Optional, Set

from storyrank.config import Config
from storyrank.constants import ConfigKeys, EngineStatus, RetryConstants
from storyrank.data_models.leaderboard import (
    ApplyOutcome, LeaderboardSnapshot, RankEntry, ScoreChanged, UserSignalRecord
)
from storyrank.database.database import Database
from storyrank.services.leaderboard import LeaderboardService
from storyrank.services.rank_index import RankIndex
from storyrank.services.score_aggregator import ScoreAggregator
from storyrank.services.signal_collector import EventInput, SignalCollector
from storyrank.services.signal_store import SignalStore
from storyrank.utils.leaderboard_exceptions import IndexCorruptionError

logger = logging.getLogger(__name__)


class LeaderboardEngine:
    """Signal store, rank index and the services around them."""

    def __init__(
        self,
        database: Database,
        config_service=None,
        shards: int = None,
        queue_size: int = None,
        debounce_seconds: float = None,
        max_wait_seconds: float = None,
        integrity_interval: float = None
    ):
        self.database = database
        self.config_service = config_service
        self.integrity_interval = (
            Config.INTEGRITY_CHECK_SECONDS if integrity_interval is None else integrity_interval
        )

        self.store = SignalStore(database)
        self.rank_index = RankIndex()
        self.collector = SignalCollector(
            self.store,
            shards=shards or Config.COLLECTOR_SHARDS,
            queue_size=queue_size or Config.SHARD_QUEUE_SIZE
        )
        self.aggregator = ScoreAggregator(
            self.store,
            config_service,
            debounce_seconds=debounce_seconds,
            max_wait_seconds=max_wait_seconds
        )
        self.leaderboard = LeaderboardService(self.rank_index, config_service)

        self.collector.subscribe(self.aggregator.on_signals_changed)
        self.aggregator.subscribe(self._on_score_changed)
        if config_service is not None:
            config_service.subscribe(self._on_config_changed)

        self._status = EngineStatus.HEALTHY
        self._rebuild_task: Optional[asyncio.Task] = None
        self._integrity_task: Optional[asyncio.Task] = None
        self._changed_during_rebuild: Set[str] = set()

    @property
    def status(self) -> str:
        return self._status

    @property
    def read_only(self) -> bool:
        return self._status != EngineStatus.HEALTHY

    # Lifecycle
    async def start(self):
        """Hydrate the store, build and verify the index, then start ingestion."""
        await self.store.load()
        self.rank_index.load(self._entries_for(self.store.all_records()))
        self.check_integrity()
        await self.collector.start()
        if self.integrity_interval > 0:
            self._integrity_task = asyncio.create_task(
                self._integrity_loop(), name="rank-index-integrity"
            )
        logger.info(f"Leaderboard engine started with {len(self.rank_index)} ranked users")

    async def stop(self):
        """Finish queued work, then release timers, workers and background tasks."""
        if self._integrity_task is not None:
            self._integrity_task.cancel()
            await asyncio.gather(self._integrity_task, return_exceptions=True)
            self._integrity_task = None
        await self.collector.stop()
        await self.aggregator.flush()
        await self.aggregator.close()
        if self._rebuild_running():
            await self._rebuild_task
        logger.info("Leaderboard engine stopped")

    # Ingestion
    async def submit(self, raw: EventInput) -> Optional[ApplyOutcome]:
        """Queue an event on its shard (see SignalCollector.submit)."""
        return await self.collector.submit(raw)

    async def apply(self, raw: EventInput) -> ApplyOutcome:
        """Apply an event directly, bypassing the shard queues."""
        return await self.collector.apply(raw)

    async def settle(self):
        """Wait for queued events and pending score recomputations to land."""
        await self.collector.drain()
        await self.aggregator.flush()
        if self._rebuild_running():
            await self._rebuild_task

    # Scoring
    def rescore(self) -> Optional[LeaderboardSnapshot]:
        """
        Recompute every user's score from the in-memory records and swap the
        whole index at once.

        Skipped while the engine is not healthy: the pending rebuild scores
        with the weights in force when it runs.
        """
        if self.read_only:
            logger.info("Rescore deferred to the pending rank index rebuild")
            return None
        snapshot = self.rank_index.load(self._entries_for(self.store.all_records()))
        logger.info(f"Rescored {snapshot.total_users} users at version {snapshot.version}")
        return snapshot

    def _on_config_changed(self, key: str, value: Any):
        if key in ConfigKeys.SCORING_WEIGHTS:
            logger.info(f"Scoring weight {key} changed to {value}, rescoring all users")
            self.rescore()

    # Integrity
    def check_integrity(self) -> bool:
        """
        Verify the rank index.

        Returns False and schedules a rebuild when the index is corrupted or
        the engine is still degraded from an earlier failed rebuild.
        """
        if self._rebuild_running():
            return False
        try:
            self.rank_index.verify()
        except IndexCorruptionError as e:
            logger.error(f"Integrity check failed: {e}")
            self._schedule_rebuild()
            return False
        if self.read_only:
            logger.warning(f"Engine is {self._status} with no rebuild running, retrying rebuild")
            self._schedule_rebuild()
            return False
        return True

    async def rebuild(self) -> LeaderboardSnapshot:
        """Rebuild the rank index from persisted signal records."""
        self._status = EngineStatus.REBUILDING
        logger.warning("Rebuilding rank index from persisted signal records")
        try:
            records = await self.store.load_persisted()
            snapshot = self.rank_index.load(self._entries_for(records))
        except Exception:
            self._status = EngineStatus.DEGRADED
            logger.error("Rank index rebuild failed", exc_info=True)
            raise

        self._status = EngineStatus.HEALTHY
        replay = sorted(self._changed_during_rebuild)
        self._changed_during_rebuild.clear()
        for user_id in replay:
            self.aggregator.recompute(user_id)

        logger.info(
            f"Rank index rebuilt with {snapshot.total_users} users "
            f"({len(replay)} replayed) at version {self.rank_index.version}"
        )
        return self.rank_index.snapshot()

    def _rebuild_running(self) -> bool:
        return self._rebuild_task is not None and not self._rebuild_task.done()

    def _schedule_rebuild(self):
        if self._rebuild_running():
            return
        self._status = EngineStatus.DEGRADED
        self._rebuild_task = asyncio.get_running_loop().create_task(
            self._run_rebuild(), name="rank-index-rebuild"
        )

    async def _run_rebuild(self):
        delay = RetryConstants.REBUILD_BACKOFF_SECONDS
        for attempt in range(1, RetryConstants.REBUILD_ATTEMPTS + 1):
            try:
                await self.rebuild()
                return
            except Exception as e:
                logger.error(f"Rebuild attempt {attempt}/{RetryConstants.REBUILD_ATTEMPTS} failed: {e}")
            if attempt < RetryConstants.REBUILD_ATTEMPTS:
                await asyncio.sleep(delay)
                delay = min(delay * 2, RetryConstants.REBUILD_MAX_BACKOFF_SECONDS)
        # Next score change or integrity check schedules a fresh round
        logger.error("Giving up on rank index rebuild for now; engine stays degraded")

    async def _integrity_loop(self):
        while True:
            await asyncio.sleep(self.integrity_interval)
            try:
                self.check_integrity()
            except Exception as e:
                logger.error(f"Periodic integrity check failed to run: {e}", exc_info=True)

    def _on_score_changed(self, change: ScoreChanged):
        if self.read_only or self.rank_index.is_corrupted:
            self._changed_during_rebuild.add(change.user_id)
            self._schedule_rebuild()
            return
        try:
            self.rank_index.upsert(
                change.user_id,
                change.new_score,
                change.tie_break_key,
                total_stories=change.total_stories,
                follower_count=change.follower_count
            )
        except IndexCorruptionError as e:
            logger.error(f"Rank index rejected update for user {change.user_id}: {e}")
            self._changed_during_rebuild.add(change.user_id)
            self._schedule_rebuild()

    def _entries_for(self, records: Iterable[UserSignalRecord]) -> List[RankEntry]:
        entries = []
        for record in records:
            composite = self.aggregator.compute(record)
            entries.append(RankEntry(
                user_id=record.user_id,
                score=composite.score,
                tie_break_key=record.tie_break_key,
                total_stories=record.stories,
                follower_count=record.followers
            ))
        return entries
