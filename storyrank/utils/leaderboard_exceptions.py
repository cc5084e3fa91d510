"""
Custom exceptions for the leaderboard engine with user-friendly error messages.
"""

class LeaderboardException(Exception):
    """Base exception for leaderboard-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class ValidationError(LeaderboardException):
    """Raised when an inbound event is malformed or has an unknown type."""
    def __init__(self, reason: str, event_id: str = None):
        self.reason = reason
        self.event_id = event_id
        super().__init__(
            f"Invalid event {event_id or '<unknown>'}: {reason}",
            f"Event rejected: {reason}"
        )

class StaleEventError(LeaderboardException):
    """Raised when an event's sequence number is not newer than the recorded state."""
    def __init__(self, user_id: str, seq: int, last_seq: int):
        self.user_id = user_id
        self.seq = seq
        self.last_seq = last_seq
        super().__init__(
            f"Stale event for user '{user_id}': seq {seq} <= last seq {last_seq}",
            "Event ignored: a newer update was already applied."
        )

class ConcurrentUpdateConflict(LeaderboardException):
    """Raised when a per-user update hits transient storage contention."""
    def __init__(self, user_id: str, details: str = None):
        self.user_id = user_id
        super().__init__(
            f"Concurrent update conflict for user '{user_id}': {details}",
            "Update is busy. Please try again later."
        )

class IndexCorruptionError(LeaderboardException):
    """Raised when the rank index is found structurally inconsistent."""
    def __init__(self, details: str):
        super().__init__(
            f"Rank index corrupted: {details}",
            "Leaderboard is being rebuilt. Results may be stale."
        )

class ConfigurationError(LeaderboardException):
    """Raised when a runtime configuration value is unknown or out of range."""
    def __init__(self, key: str, reason: str):
        self.key = key
        super().__init__(
            f"Invalid configuration for '{key}': {reason}",
            f"Configuration rejected: {reason}"
        )

class DatabaseError(LeaderboardException):
    """Raised when database operations fail."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Database error during {operation}: {details}",
            "Database error occurred. Please try again later."
        )
