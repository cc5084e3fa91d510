"""
Engine-wide constants for the storyrank leaderboard.

This module contains the magic numbers and default values used throughout
the codebase to improve maintainability and clarity.
"""

class ScoringConstants:
    """Default weights for the composite score formula."""

    # score = w1*stories + w2*rating*stories + w3*log1p(views) + w4*followers - w5*dislikes
    WEIGHT_STORIES = 10.0
    WEIGHT_RATING = 2.0
    WEIGHT_VIEWS = 1.0
    WEIGHT_FOLLOWERS = 0.5
    WEIGHT_DISLIKES = 1.0

    # Average rating bounds
    MIN_RATING = 0.0
    MAX_RATING = 5.0

    # Scores are rounded so identical tallies compare equal bit-for-bit
    SCORE_PRECISION = 6

class EventTypes:
    """Inbound signal event types."""

    STORY_PUBLISHED = "StoryPublished"
    STORY_UNPUBLISHED = "StoryUnpublished"
    VOTE_CAST = "VoteCast"
    FOLLOW_CHANGED = "FollowChanged"
    VIEW_RECORDED = "ViewRecorded"

    ALL = frozenset({
        STORY_PUBLISHED,
        STORY_UNPUBLISHED,
        VOTE_CAST,
        FOLLOW_CHANGED,
        VIEW_RECORDED,
    })

    # Vote values carried in VoteCast payloads
    VOTE_LIKE = "like"
    VOTE_DISLIKE = "dislike"
    VOTE_NONE = "none"
    VOTES = frozenset({VOTE_LIKE, VOTE_DISLIKE, VOTE_NONE})

class PaginationConstants:
    """Constants for paginated leaderboard queries."""

    # Default page size for leaderboards
    DEFAULT_PAGE_SIZE = 10

    # Upper bound for a single page request
    MAX_PAGE_SIZE = 100

class RetryConstants:
    """Constants for bounded retry of contended updates."""

    MAX_RETRIES = 3
    BASE_BACKOFF_SECONDS = 0.05

    # Background rank index rebuilds
    REBUILD_ATTEMPTS = 5
    REBUILD_BACKOFF_SECONDS = 0.5
    REBUILD_MAX_BACKOFF_SECONDS = 10.0

class EngineStatus:
    """Operational states of the leaderboard engine."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    REBUILDING = "rebuilding"

class ConfigKeys:
    """Runtime configuration keys served by ConfigurationService."""

    WEIGHT_STORIES = "scoring.weight_stories"
    WEIGHT_RATING = "scoring.weight_rating"
    WEIGHT_VIEWS = "scoring.weight_views"
    WEIGHT_FOLLOWERS = "scoring.weight_followers"
    WEIGHT_DISLIKES = "scoring.weight_dislikes"
    SCORING_WEIGHTS = frozenset({
        WEIGHT_STORIES,
        WEIGHT_RATING,
        WEIGHT_VIEWS,
        WEIGHT_FOLLOWERS,
        WEIGHT_DISLIKES,
    })

    MAX_PAGE_SIZE = "leaderboard.max_page_size"

    ALL = SCORING_WEIGHTS | {MAX_PAGE_SIZE}
