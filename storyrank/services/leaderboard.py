"""
Leaderboard query service for the storyrank engine.

Serves paginated rankings and single-user rank lookups. Every call reads one
rank index snapshot, so all entries it returns share a snapshot version.
"""

import logging
from typing import Optional

from storyrank.constants import ConfigKeys, PaginationConstants
from storyrank.data_models.leaderboard import LeaderboardPage, UserRank
from storyrank.services.rank_index import RankIndex

logger = logging.getLogger(__name__)


class LeaderboardService:
    """Read-only queries over the rank index."""

    def __init__(self, rank_index: RankIndex, config_service=None):
        self.rank_index = rank_index
        self.config_service = config_service

    @property
    def max_page_size(self) -> int:
        if self.config_service is None:
            return PaginationConstants.MAX_PAGE_SIZE
        return int(self.config_service.get(ConfigKeys.MAX_PAGE_SIZE, PaginationConstants.MAX_PAGE_SIZE))

    def get_page(self, offset: int = 0, limit: int = PaginationConstants.DEFAULT_PAGE_SIZE) -> LeaderboardPage:
        """Get a page of the ranking; an offset past the end yields no entries."""
        if not isinstance(offset, int) or offset < 0:
            raise ValueError("offset must be a non-negative integer")
        if not isinstance(limit, int) or limit < 1 or limit > self.max_page_size:
            raise ValueError(f"limit must be between 1 and {self.max_page_size}")

        snapshot = self.rank_index.snapshot()
        entries = self.rank_index.range_query(offset, limit, snapshot=snapshot)
        return LeaderboardPage(
            entries=entries,
            total_users=snapshot.total_users,
            snapshot_version=snapshot.version,
            offset=offset,
            limit=limit
        )

    def get_user_rank(self, user_id: str) -> Optional[UserRank]:
        """Rank lookup for one user; None when the user has no ranked entry yet."""
        snapshot = self.rank_index.snapshot()
        entry = self.rank_index.entry_of(user_id, snapshot=snapshot)
        if entry is None:
            logger.debug(f"User {user_id} not ranked at version {snapshot.version}")
            return None
        return UserRank(
            user_id=user_id,
            rank=entry.rank,
            score=entry.score,
            snapshot_version=snapshot.version
        )
