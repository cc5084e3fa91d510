"""
Tests for the rank index: strict total order, tie-breaks, pagination,
snapshot isolation and corruption detection.
"""

import random
from dataclasses import replace
from datetime import timedelta

import pytest

from storyrank.services.rank_index import RankIndex
from storyrank.utils import treap
from storyrank.utils.leaderboard_exceptions import IndexCorruptionError
from tests.helpers.events import BASE_TIME


def key(user_id, days=0):
    return (BASE_TIME + timedelta(days=days), user_id)


def ranking(index):
    return [(entry.rank, entry.user_id) for entry in index.range_query(0, len(index))]


def test_orders_by_score_descending():
    index = RankIndex()
    index.upsert("low", 1.0, key("low"))
    index.upsert("high", 30.0, key("high"))
    index.upsert("mid", 12.5, key("mid"))

    assert ranking(index) == [(1, "high"), (2, "mid"), (3, "low")]
    assert index.rank_of("high") == 1
    assert index.rank_of("low") == 3


def test_equal_scores_break_on_account_creation_then_user_id():
    index = RankIndex()
    index.upsert("zed", 10.0, key("zed", days=0))
    index.upsert("amy", 10.0, key("amy", days=5))
    index.upsert("bob", 10.0, key("bob", days=5))

    # zed's account is oldest; amy and bob share a creation time
    assert [user for _, user in ranking(index)] == ["zed", "amy", "bob"]

    # Repeated queries give the same answer
    for _ in range(3):
        assert index.rank_of("zed") == 1
        assert index.rank_of("bob") == 3


def test_upsert_repositions_without_duplicates():
    index = RankIndex()
    for i, user in enumerate(["a", "b", "c", "d"]):
        index.upsert(user, float(i), key(user))

    index.upsert("a", 100.0, key("a"))

    assert len(index) == 4
    assert ranking(index)[0] == (1, "a")
    assert [user for _, user in ranking(index)].count("a") == 1
    index.verify()


def test_unchanged_upsert_keeps_version():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"), total_stories=1)
    version = index.version

    index.upsert("a", 5.0, key("a"), total_stories=1)

    assert index.version == version


def test_remove():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))
    index.upsert("b", 3.0, key("b"))

    assert index.remove("a") is True
    assert index.remove("a") is False
    assert index.rank_of("a") is None
    assert ranking(index) == [(1, "b")]


def test_range_query_past_end_is_empty():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))

    assert index.range_query(1, 10) == []
    assert index.range_query(50, 10) == []


def test_range_query_rejects_negative_arguments():
    index = RankIndex()
    with pytest.raises(ValueError):
        index.range_query(-1, 10)


def test_pages_concatenate_to_full_order():
    index = RankIndex()
    rng = random.Random(7)
    for i in range(53):
        index.upsert(f"user-{i:02d}", float(rng.randint(0, 20)), key(f"user-{i:02d}", days=rng.randint(0, 3)))

    full = index.range_query(0, 1000)
    paged = []
    offset = 0
    while True:
        page = index.range_query(offset, 8)
        if not page:
            break
        paged.extend(page)
        offset += 8

    assert paged == full
    assert [entry.rank for entry in paged] == list(range(1, 54))
    assert len({entry.user_id for entry in paged}) == 53


def test_snapshot_is_isolated_from_later_mutations():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))
    index.upsert("b", 3.0, key("b"))
    before = index.snapshot()

    index.upsert("b", 9.0, key("b"))
    index.upsert("c", 1.0, key("c"))

    assert index.version > before.version
    assert [e.user_id for e in index.range_query(0, 10, snapshot=before)] == ["a", "b"]
    assert index.rank_of("b", snapshot=before) == 2
    assert index.rank_of("b") == 1
    assert before.total_users == 2


def test_random_operations_match_sorted_reference():
    rng = random.Random(1234)
    index = RankIndex()
    reference = {}

    for _ in range(600):
        user = f"u{rng.randint(0, 60)}"
        if rng.random() < 0.2:
            assert index.remove(user) == (user in reference)
            reference.pop(user, None)
        else:
            score = float(rng.randint(0, 15))
            created = key(user, days=rng.randint(0, 2))
            index.upsert(user, score, created)
            reference[user] = (-score, created[0], user)

    expected = sorted(reference, key=lambda u: reference[u])
    assert [e.user_id for e in index.range_query(0, len(index))] == expected
    for position, user in enumerate(expected, start=1):
        assert index.rank_of(user) == position
    index.verify()


def test_strict_total_order_holds_for_every_pair():
    index = RankIndex()
    rng = random.Random(99)
    for i in range(40):
        index.upsert(f"p{i}", float(rng.randint(0, 4)), key(f"p{i}", days=rng.randint(0, 1)))

    entries = index.range_query(0, len(index))
    for earlier, later in zip(entries, entries[1:]):
        assert earlier.sort_key < later.sort_key
    assert [e.rank for e in entries] == list(range(1, len(entries) + 1))


def test_verify_detects_membership_corruption():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))
    index.upsert("b", 3.0, key("b"))
    snapshot = index.snapshot()

    # Drop "a" from the member tree only
    index._snapshot = replace(snapshot, member_root=treap.delete(snapshot.member_root, "a"))

    with pytest.raises(IndexCorruptionError):
        index.verify()
    assert index.is_corrupted
    with pytest.raises(IndexCorruptionError):
        index.upsert("c", 1.0, key("c"))


def test_upsert_detects_missing_order_entry():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))
    snapshot = index.snapshot()
    entry = treap.find(snapshot.member_root, "a").value
    index._snapshot = replace(snapshot, order_root=treap.delete(snapshot.order_root, entry.sort_key))

    with pytest.raises(IndexCorruptionError):
        index.upsert("a", 8.0, key("a"))
    assert index.is_corrupted


def test_load_replaces_contents_and_clears_corruption():
    index = RankIndex()
    index.upsert("a", 5.0, key("a"))
    index._corruption = "forced"
    entries = [
        index.range_query(0, 1)[0],
    ]

    snapshot = index.load(entries + [replace(entries[0], user_id="b", score=9.0, tie_break_key=key("b"))])

    assert not index.is_corrupted
    assert snapshot.total_users == 2
    assert ranking(index) == [(1, "b"), (2, "a")]
    index.verify()
