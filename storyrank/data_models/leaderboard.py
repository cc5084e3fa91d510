"""
Leaderboard data models for the scoring and ranking engine.

Provides immutable data transfer objects shared by the collector, aggregator,
rank index and query service. Wire-format conversion (camelCase keys) lives
here so the HTTP layer stays thin.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from storyrank.constants import EventTypes, ScoringConstants
from storyrank.utils.leaderboard_exceptions import ValidationError

# (account_created_at, user_id): ascending, earliest account first
TieBreakKey = Tuple[datetime, str]


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string, epoch seconds or datetime into UTC."""
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a timestamp")
    if isinstance(value, (int, float)):
        try:
            if not math.isfinite(value):
                raise ValueError(value)
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise ValidationError(f"{field_name} is out of range: {value!r}")
    if isinstance(value, str) and value:
        try:
            return to_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except (ValueError, OverflowError):
            raise ValidationError(f"{field_name} is not an ISO-8601 timestamp: {value!r}")
    raise ValidationError(f"{field_name} must be a timestamp")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplyOutcome(Enum):
    """Result of applying one event to the signal store."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class UserSignalRecord:
    """Raw per-user activity tallies held by the signal store.

    Counters are accumulated signed sums of accepted event deltas; readers use
    the clamped properties so a retraction that arrives before its original
    never shows a negative count.
    """
    user_id: str
    account_created_at: datetime
    total_stories: int = 0
    total_views: int = 0
    total_likes: int = 0
    total_dislikes: int = 0
    follower_count: int = 0
    rating_sum: float = 0.0
    rating_count: int = 0
    last_event_seq: int = 0
    last_activity_at: Optional[datetime] = None

    @property
    def average_rating(self) -> float:
        if self.rating_count <= 0:
            return 0.0
        average = self.rating_sum / self.rating_count
        return min(ScoringConstants.MAX_RATING, max(ScoringConstants.MIN_RATING, average))

    @property
    def stories(self) -> int:
        return max(0, self.total_stories)

    @property
    def views(self) -> int:
        return max(0, self.total_views)

    @property
    def likes(self) -> int:
        return max(0, self.total_likes)

    @property
    def dislikes(self) -> int:
        return max(0, self.total_dislikes)

    @property
    def followers(self) -> int:
        return max(0, self.follower_count)

    @property
    def tie_break_key(self) -> TieBreakKey:
        return (to_utc(self.account_created_at), self.user_id)

    def with_changes(self, **changes) -> "UserSignalRecord":
        return replace(self, **changes)


@dataclass(frozen=True)
class SignalEvent:
    """A validated inbound domain event affecting one user's tallies."""
    type: str
    user_id: str
    event_id: str
    seq: int
    payload: Mapping[str, Any]
    timestamp: datetime
    account_created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SignalEvent":
        """Build an event from its wire form, raising ValidationError when malformed."""
        if not isinstance(data, Mapping):
            raise ValidationError("event must be a JSON object")

        event_id = data.get('eventId')
        if not isinstance(event_id, str) or not event_id:
            raise ValidationError("eventId must be a non-empty string")

        event_type = data.get('type')
        if event_type not in EventTypes.ALL:
            raise ValidationError(f"unknown event type {event_type!r}", event_id)

        user_id = data.get('userId')
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("userId must be a non-empty string", event_id)

        seq = data.get('seq')
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            raise ValidationError("seq must be a positive integer", event_id)

        payload = data.get('payload') or {}
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be an object", event_id)

        try:
            timestamp = parse_timestamp(data.get('timestamp'))
            created_raw = data.get('accountCreatedAt', payload.get('accountCreatedAt'))
            account_created_at = (
                parse_timestamp(created_raw, 'accountCreatedAt') if created_raw is not None else None
            )
        except ValidationError as e:
            raise ValidationError(e.reason, event_id)

        return cls(
            type=event_type,
            user_id=user_id,
            event_id=event_id,
            seq=seq,
            payload=dict(payload),
            timestamp=timestamp,
            account_created_at=account_created_at,
        )


@dataclass(frozen=True)
class CompositeScore:
    """Derived score for one user; recomputed, never edited."""
    user_id: str
    score: float
    computed_at: datetime
    epoch: int


@dataclass(frozen=True)
class ScoreChanged:
    """Notification published by the score aggregator after a recomputation."""
    composite: CompositeScore
    tie_break_key: TieBreakKey
    total_stories: int
    follower_count: int

    @property
    def user_id(self) -> str:
        return self.composite.user_id

    @property
    def new_score(self) -> float:
        return self.composite.score


@dataclass(frozen=True)
class RankEntry:
    """Single leaderboard row; rank is materialized only when queried."""
    user_id: str
    score: float
    tie_break_key: TieBreakKey
    rank: Optional[int] = None
    total_stories: int = 0
    follower_count: int = 0

    @property
    def sort_key(self) -> Tuple[float, datetime, str]:
        # score descending, then account creation and user id ascending
        return (-self.score, self.tie_break_key[0], self.tie_break_key[1])

    def with_rank(self, rank: int) -> "RankEntry":
        return replace(self, rank=rank)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rank': self.rank,
            'userId': self.user_id,
            'score': self.score,
            'totalStories': self.total_stories,
            'followerCount': self.follower_count,
        }


@dataclass(frozen=True)
class LeaderboardSnapshot:
    """Immutable, versioned read view of the rank index."""
    version: int
    generated_at: datetime
    order_root: Any = field(default=None, repr=False, compare=False)
    member_root: Any = field(default=None, repr=False, compare=False)

    @property
    def total_users(self) -> int:
        return self.order_root.size if self.order_root is not None else 0


@dataclass(frozen=True)
class LeaderboardPage:
    """Paginated leaderboard data."""
    entries: List[RankEntry]
    total_users: int
    snapshot_version: int
    offset: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entries': [entry.to_dict() for entry in self.entries],
            'totalUsers': self.total_users,
            'snapshotVersion': self.snapshot_version,
        }


@dataclass(frozen=True)
class UserRank:
    """Single-user rank lookup result."""
    user_id: str
    rank: int
    score: float
    snapshot_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rank': self.rank,
            'score': self.score,
            'snapshotVersion': self.snapshot_version,
        }
