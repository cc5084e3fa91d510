"""storyrank: activity-driven creator leaderboard engine."""

__version__ = "0.1.0"
