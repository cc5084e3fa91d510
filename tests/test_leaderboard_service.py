"""
End-to-end tests through the engine: events in, ranked pages out, plus
rebuild and startup hydration.
"""

import asyncio
import random
from dataclasses import replace
from datetime import timedelta

import pytest

from storyrank.constants import EngineStatus, RetryConstants
from storyrank.database.database import Database
from storyrank.services.engine import LeaderboardEngine
from storyrank.services.leaderboard import LeaderboardService
from storyrank.services.rank_index import RankIndex
from storyrank.utils import treap
from storyrank.utils.leaderboard_exceptions import DatabaseError
from tests.helpers.events import BASE_TIME, EventFactory, apply_all


class StaticConfig:
    def __init__(self, values):
        self.values = values

    def get(self, key, default=None):
        return self.values.get(key, default)


def corrupt_member(engine, user_id):
    snapshot = engine.rank_index.snapshot()
    engine.rank_index._snapshot = replace(snapshot, member_root=treap.delete(snapshot.member_root, user_id))


def standings(engine):
    page = engine.leaderboard.get_page(0, 100)
    return [(entry.rank, entry.user_id, entry.score) for entry in page.entries]


async def seed_abc(engine, events):
    await apply_all(engine, (
        events.profile("A", stories=5, rating=4.5, views=1000, followers=50)
        + events.profile("B", stories=2, rating=4.0, views=200, followers=10)
        + events.profile("C")
    ))


@pytest.mark.asyncio
async def test_ranks_users_by_composite_score(engine, events):
    await seed_abc(engine, events)

    page = engine.leaderboard.get_page(0, 10)

    assert [(entry.rank, entry.user_id) for entry in page.entries] == [(1, "A"), (2, "B"), (3, "C")]
    assert page.total_users == 3
    assert page.entries[0].total_stories == 5
    assert page.entries[0].follower_count == 50
    assert page.entries[2].score == 0.0


@pytest.mark.asyncio
async def test_user_rank_lookup(engine, events):
    await seed_abc(engine, events)

    user_rank = engine.leaderboard.get_user_rank("B")

    assert user_rank.rank == 2
    assert user_rank.score == engine.aggregator.compute(engine.store.get("B")).score
    assert user_rank.snapshot_version == engine.rank_index.version
    assert engine.leaderboard.get_user_rank("nobody") is None


@pytest.mark.asyncio
async def test_equal_scores_rank_earlier_account_first(engine, events):
    await apply_all(engine, (
        events.profile("late", stories=1, created_at=BASE_TIME + timedelta(days=30))
        + events.profile("early", stories=1, created_at=BASE_TIME)
    ))

    for _ in range(3):
        assert engine.leaderboard.get_user_rank("early").rank == 1
        assert engine.leaderboard.get_user_rank("late").rank == 2


@pytest.mark.asyncio
async def test_score_change_repositions_user(engine, events):
    await seed_abc(engine, events)

    await apply_all(engine, [events.published("C") for _ in range(20)])

    assert engine.leaderboard.get_user_rank("C").rank == 1
    assert [user for _, user, _ in standings(engine)] == ["C", "A", "B"]


@pytest.mark.asyncio
async def test_offset_past_end_returns_empty_page(engine, events):
    await seed_abc(engine, events)

    page = engine.leaderboard.get_page(10, 5)

    assert page.entries == []
    assert page.total_users == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("offset,limit", [(-1, 10), (0, 0), (0, 101), ("0", 10)])
async def test_invalid_paging_is_rejected(engine, offset, limit):
    with pytest.raises(ValueError):
        engine.leaderboard.get_page(offset, limit)


def test_page_size_limit_comes_from_configuration():
    service = LeaderboardService(RankIndex(), StaticConfig({'leaderboard.max_page_size': 5}))

    assert service.max_page_size == 5
    with pytest.raises(ValueError):
        service.get_page(0, 6)
    assert service.get_page(0, 5).entries == []


@pytest.mark.asyncio
async def test_pages_concatenate_without_gaps(engine, events):
    batch = []
    for i in range(23):
        batch += events.profile(f"user-{i:02d}", stories=i % 4, views=i * 10, followers=i % 3)
    await apply_all(engine, batch)

    full = engine.leaderboard.get_page(0, 100)
    paged = []
    for offset in range(0, 30, 7):
        page = engine.leaderboard.get_page(offset, 7)
        assert {entry.rank for entry in page.entries} == set(range(offset + 1, offset + 1 + len(page.entries)))
        assert page.snapshot_version == full.snapshot_version
        paged += page.entries

    assert paged == full.entries
    assert len({entry.user_id for entry in paged}) == 23


@pytest.mark.asyncio
async def test_arrival_order_does_not_change_ranking(tmp_path):
    factory = EventFactory()
    per_user = [
        factory.profile(f"u{i}", stories=i % 3, rating=(i % 5) or None, views=i * 7, followers=i % 4)
        for i in range(12)
    ]

    results = []
    for attempt in range(2):
        database = Database(f"sqlite+aiosqlite:///{tmp_path / f'order_{attempt}.db'}")
        await database.initialize()
        engine = LeaderboardEngine(database, shards=2, queue_size=4, debounce_seconds=0)
        await engine.start()

        # Interleave users differently each time; a user's own events keep their order
        queues = [list(user_events) for user_events in per_user]
        rng = random.Random(attempt)
        while any(queues):
            queue = rng.choice([q for q in queues if q])
            await engine.apply(queue.pop(0))
        await engine.settle()

        results.append(standings(engine))
        await engine.stop()
        await database.close()

    assert results[0] == results[1]


@pytest.mark.asyncio
async def test_startup_rebuilds_ranking_from_storage(database, events):
    first = LeaderboardEngine(database, shards=2, debounce_seconds=0)
    await first.start()
    await seed_abc(first, events)
    before = standings(first)
    await first.stop()

    second = LeaderboardEngine(database, shards=2, debounce_seconds=0)
    await second.start()
    try:
        assert standings(second) == before
        assert second.status == EngineStatus.HEALTHY
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_corrupted_index_is_rebuilt_to_identical_ranking(engine, events):
    await seed_abc(engine, events)
    before = standings(engine)
    corrupt_member(engine, "B")

    assert engine.check_integrity() is False
    assert engine.status in (EngineStatus.DEGRADED, EngineStatus.REBUILDING)

    await engine.settle()

    assert engine.status == EngineStatus.HEALTHY
    assert standings(engine) == before
    assert engine.check_integrity() is True


@pytest.mark.asyncio
async def test_update_hitting_corruption_is_replayed_after_rebuild(engine, events):
    await seed_abc(engine, events)
    snapshot = engine.rank_index.snapshot()
    entry = treap.find(snapshot.member_root, "C").value
    engine.rank_index._snapshot = replace(snapshot, order_root=treap.delete(snapshot.order_root, entry.sort_key))

    await apply_all(engine, [events.published("C") for _ in range(20)])

    assert engine.status == EngineStatus.HEALTHY
    assert not engine.rank_index.is_corrupted
    assert engine.leaderboard.get_user_rank("C").rank == 1
    assert len(engine.rank_index) == 3
    engine.rank_index.verify()


@pytest.mark.asyncio
async def test_rebuild_serves_last_snapshot_until_swapped(engine, events):
    await seed_abc(engine, events)
    version = engine.rank_index.version

    snapshot = await engine.rebuild()

    assert snapshot.version > version
    assert [user for _, user, _ in standings(engine)] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_failed_rebuild_is_retried_until_it_succeeds(engine, events, monkeypatch):
    monkeypatch.setattr(RetryConstants, "REBUILD_BACKOFF_SECONDS", 0.01)
    await seed_abc(engine, events)
    before = standings(engine)

    real_load = engine.store.load_persisted
    calls = []

    async def flaky_load():
        calls.append(1)
        if len(calls) <= 2:
            raise DatabaseError("loading signal records", "disk I/O error")
        return await real_load()

    monkeypatch.setattr(engine.store, "load_persisted", flaky_load)
    corrupt_member(engine, "B")

    assert engine.check_integrity() is False
    await engine.settle()

    assert len(calls) == 3
    assert engine.status == EngineStatus.HEALTHY
    assert standings(engine) == before


@pytest.mark.asyncio
async def test_exhausted_rebuild_is_rescheduled_by_next_score_change(engine, events, monkeypatch):
    monkeypatch.setattr(RetryConstants, "REBUILD_BACKOFF_SECONDS", 0.01)
    monkeypatch.setattr(RetryConstants, "REBUILD_ATTEMPTS", 2)
    await seed_abc(engine, events)

    real_load = engine.store.load_persisted

    async def broken_load():
        raise DatabaseError("loading signal records", "disk I/O error")

    monkeypatch.setattr(engine.store, "load_persisted", broken_load)
    corrupt_member(engine, "B")
    engine.check_integrity()
    await engine.settle()

    assert engine.status == EngineStatus.DEGRADED
    assert engine.rescore() is None

    monkeypatch.setattr(engine.store, "load_persisted", real_load)
    await apply_all(engine, [events.published("C") for _ in range(20)])

    assert engine.status == EngineStatus.HEALTHY
    assert engine.leaderboard.get_user_rank("C").rank == 1
    assert engine.leaderboard.get_user_rank("C").score == engine.aggregator.compute(engine.store.get("C")).score
    assert len(engine.rank_index) == 3
    engine.rank_index.verify()


@pytest.mark.asyncio
async def test_running_engine_repairs_corruption_on_its_own(database, events):
    engine = LeaderboardEngine(database, shards=2, debounce_seconds=0, integrity_interval=0.05)
    await engine.start()
    try:
        await seed_abc(engine, events)
        before = standings(engine)
        version = engine.rank_index.version
        corrupt_member(engine, "A")

        await asyncio.sleep(0.3)
        await engine.settle()

        assert engine.status == EngineStatus.HEALTHY
        assert not engine.rank_index.is_corrupted
        assert standings(engine) == before
        assert engine.rank_index.version > version
    finally:
        await engine.stop()
