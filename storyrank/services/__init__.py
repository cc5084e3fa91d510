"""
Services package for the storyrank leaderboard engine.
"""

from .base import BaseService
from .engine import LeaderboardEngine
from .leaderboard import LeaderboardService
from .rank_index import RankIndex
from .score_aggregator import ScoreAggregator, ScoreWeights
from .signal_collector import SignalCollector
from .signal_store import SignalStore

__all__ = [
    'BaseService',
    'LeaderboardEngine',
    'LeaderboardService',
    'RankIndex',
    'ScoreAggregator',
    'ScoreWeights',
    'SignalCollector',
    'SignalStore',
]
