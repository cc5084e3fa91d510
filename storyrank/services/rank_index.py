"""
Rank index for the storyrank leaderboard engine.

Keeps every ranked user in a strict total order by
(score desc, account_created_at asc, user_id asc) using two persistent
treaps:

- order tree: sort key -> RankEntry, size-augmented for rank/select
- member tree: user id -> RankEntry, to find a user's current sort key

Each mutation runs in one short critical section that path-copies both trees
and publishes a new LeaderboardSnapshot. Readers grab the current snapshot
(a single attribute read) and work on it without locking, so they never see a
half-applied reposition.
"""

import logging
import threading
from typing import Iterable, List, Optional

from storyrank.data_models.leaderboard import (
    LeaderboardSnapshot, RankEntry, TieBreakKey, utcnow
)
from storyrank.utils import treap
from storyrank.utils.leaderboard_exceptions import IndexCorruptionError

logger = logging.getLogger(__name__)


class RankIndex:
    """Order-statistics index over ranked users with versioned snapshots."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = LeaderboardSnapshot(version=0, generated_at=utcnow())
        self._corruption: Optional[str] = None

    def __len__(self) -> int:
        return self._snapshot.total_users

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def is_corrupted(self) -> bool:
        return self._corruption is not None

    def snapshot(self) -> LeaderboardSnapshot:
        """Current consistent read view."""
        return self._snapshot

    # Mutations
    def upsert(
        self,
        user_id: str,
        score: float,
        tie_break_key: TieBreakKey,
        total_stories: int = 0,
        follower_count: int = 0
    ) -> LeaderboardSnapshot:
        """Insert or reposition a user. O(log n) expected."""
        entry = RankEntry(
            user_id=user_id,
            score=score,
            tie_break_key=tie_break_key,
            total_stories=total_stories,
            follower_count=follower_count
        )
        with self._lock:
            self._ensure_usable()
            current = self._snapshot
            order, members = current.order_root, current.member_root

            existing = treap.find(members, user_id)
            if existing is not None:
                if existing.value == entry:
                    return current
                order = self._delete_order(order, existing.value)
                members = treap.delete(members, user_id)

            try:
                order = treap.insert(order, entry.sort_key, entry)
            except KeyError:
                self._mark_corrupted(f"sort key of user {user_id} already present in order tree")
            members = treap.insert(members, user_id, entry)
            return self._publish(order, members)

    def remove(self, user_id: str) -> bool:
        """Drop a user from the ranking. Returns False when not ranked."""
        with self._lock:
            self._ensure_usable()
            current = self._snapshot
            existing = treap.find(current.member_root, user_id)
            if existing is None:
                return False
            order = self._delete_order(current.order_root, existing.value)
            members = treap.delete(current.member_root, user_id)
            self._publish(order, members)
            return True

    def load(self, entries: Iterable[RankEntry]) -> LeaderboardSnapshot:
        """Replace the whole index contents (rebuild). Clears a corruption mark."""
        order = None
        members = None
        for entry in entries:
            entry = entry.with_rank(None) if entry.rank is not None else entry
            order = treap.insert(order, entry.sort_key, entry)
            members = treap.insert(members, entry.user_id, entry)
        with self._lock:
            self._corruption = None
            snapshot = self._publish(order, members)
        logger.info(f"Rank index loaded with {snapshot.total_users} entries at version {snapshot.version}")
        return snapshot

    # Queries
    def range_query(
        self,
        offset: int,
        limit: int,
        snapshot: LeaderboardSnapshot = None
    ) -> List[RankEntry]:
        """Entries at ranks offset+1 .. offset+limit; empty past the end."""
        if offset < 0 or limit < 0:
            raise ValueError("offset and limit must be non-negative")
        snapshot = snapshot or self._snapshot
        values = treap.slice_values(snapshot.order_root, offset, limit)
        return [entry.with_rank(offset + i + 1) for i, entry in enumerate(values)]

    def rank_of(self, user_id: str, snapshot: LeaderboardSnapshot = None) -> Optional[int]:
        """1-based rank of a user, or None when not ranked."""
        entry = self.entry_of(user_id, snapshot)
        return entry.rank if entry else None

    def entry_of(self, user_id: str, snapshot: LeaderboardSnapshot = None) -> Optional[RankEntry]:
        snapshot = snapshot or self._snapshot
        member = treap.find(snapshot.member_root, user_id)
        if member is None:
            return None
        position = treap.rank(snapshot.order_root, member.value.sort_key)
        if position is None:
            return None
        return member.value.with_rank(position + 1)

    def verify(self):
        """
        Check structural integrity of the current snapshot.

        Raises:
            IndexCorruptionError: broken order, size augmentation or membership
        """
        snapshot = self._snapshot
        problems = treap.check(snapshot.order_root) + treap.check(snapshot.member_root)
        if treap.size(snapshot.order_root) != treap.size(snapshot.member_root):
            problems.append(
                f"order tree has {treap.size(snapshot.order_root)} entries, "
                f"member tree has {treap.size(snapshot.member_root)}"
            )

        seen = set()
        for node in treap.iter_nodes(snapshot.order_root):
            if node.value.user_id in seen:
                problems.append(f"duplicate entry for user {node.value.user_id}")
            seen.add(node.value.user_id)
            if node.key != node.value.sort_key:
                problems.append(f"entry for user {node.value.user_id} filed under a stale key")
            member = treap.find(snapshot.member_root, node.value.user_id)
            if member is None or member.value.sort_key != node.key:
                problems.append(f"user {node.value.user_id} missing from member tree")

        if problems:
            with self._lock:
                self._corruption = problems[0]
            raise IndexCorruptionError("; ".join(problems[:5]))

    # Internals
    def _ensure_usable(self):
        if self._corruption is not None:
            raise IndexCorruptionError(self._corruption)

    def _mark_corrupted(self, details: str):
        self._corruption = details
        logger.error(f"Rank index corruption detected: {details}")
        raise IndexCorruptionError(details)

    def _delete_order(self, order, entry: RankEntry):
        try:
            return treap.delete(order, entry.sort_key)
        except KeyError:
            self._mark_corrupted(f"user {entry.user_id} missing from order tree")

    def _publish(self, order, members) -> LeaderboardSnapshot:
        self._snapshot = LeaderboardSnapshot(
            version=self._snapshot.version + 1,
            generated_at=utcnow(),
            order_root=order,
            member_root=members
        )
        return self._snapshot
