import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Leaderboard engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///storyrank.db')

    # Service settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    HTTP_HOST = os.getenv('HTTP_HOST', '0.0.0.0')
    HTTP_PORT = int(os.getenv('HTTP_PORT', 8080))
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # Ingestion settings
    COLLECTOR_SHARDS = int(os.getenv('COLLECTOR_SHARDS', 8))
    SHARD_QUEUE_SIZE = int(os.getenv('SHARD_QUEUE_SIZE', 1000))

    # Score recomputation debounce (seconds)
    DEBOUNCE_SECONDS = float(os.getenv('DEBOUNCE_SECONDS', 0.25))
    DEBOUNCE_MAX_WAIT_SECONDS = float(os.getenv('DEBOUNCE_MAX_WAIT_SECONDS', 2.0))

    # Periodic rank index verification (seconds, 0 disables)
    INTEGRITY_CHECK_SECONDS = float(os.getenv('INTEGRITY_CHECK_SECONDS', 60))

    @classmethod
    def async_database_url(cls, database_url: str = None) -> str:
        """Convert a sqlite URL to its aiosqlite form if needed"""
        database_url = database_url or cls.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if cls.COLLECTOR_SHARDS < 1:
            raise ValueError("COLLECTOR_SHARDS must be at least 1")
        if cls.SHARD_QUEUE_SIZE < 1:
            raise ValueError("SHARD_QUEUE_SIZE must be at least 1")
        if cls.DEBOUNCE_SECONDS < 0:
            raise ValueError("DEBOUNCE_SECONDS cannot be negative")
        if cls.DEBOUNCE_MAX_WAIT_SECONDS < cls.DEBOUNCE_SECONDS:
            raise ValueError("DEBOUNCE_MAX_WAIT_SECONDS must be >= DEBOUNCE_SECONDS")
        if cls.INTEGRITY_CHECK_SECONDS < 0:
            raise ValueError("INTEGRITY_CHECK_SECONDS cannot be negative")
        if not 0 < cls.HTTP_PORT < 65536:
            raise ValueError("HTTP_PORT must be a valid TCP port")
