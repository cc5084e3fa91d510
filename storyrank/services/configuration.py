"""
Runtime configuration for the storyrank leaderboard engine.

Serves the tunable values the engine reads while running (composite score
weights and the page size cap) from the `configurations` table, with an
in-memory cache, value validation, an audit trail on every change and change
notifications so scores can follow new weights.
"""

import json
import logging
import math
from typing import Any, Callable, Dict, List

from sqlalchemy import select

from storyrank.constants import ConfigKeys
from storyrank.database.models import AuditLog, Configuration
from storyrank.services.base import BaseService
from storyrank.utils.leaderboard_exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ConfigChangedListener = Callable[[str, Any], None]


def validate_value(key: str, value: Any) -> Any:
    """
    Check a value for a known key and return it in canonical form.

    Raises:
        ConfigurationError: unknown key, or a value the engine cannot use
    """
    if key in ConfigKeys.SCORING_WEIGHTS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ConfigurationError(key, "weight must be a finite number")
        return float(value)

    if key == ConfigKeys.MAX_PAGE_SIZE:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(key, "page size must be a positive integer")
        return value

    raise ConfigurationError(key, "unknown configuration key")


class ConfigurationService(BaseService):
    """Validated runtime configuration with caching, audit trail and change listeners."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}
        self._listeners: List[ConfigChangedListener] = []

    def subscribe(self, listener: ConfigChangedListener):
        """Register a callback invoked with (key, value) after each successful set."""
        self._listeners.append(listener)

    async def load_all(self):
        """Load stored values into memory, skipping rows that no longer validate."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            for config in result.scalars().all():
                try:
                    new_cache[config.key] = validate_value(config.key, json.loads(config.value))
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{config.key}', skipping")
                except ConfigurationError as e:
                    logger.warning(f"Ignoring stored configuration: {e}")

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    def get(self, key: str, default: Any = None) -> Any:
        return self._cache.get(key, default)

    async def set(self, key: str, value: Any, user_id: str):
        """
        Validate, persist and audit a configuration value, then notify listeners.

        Args:
            key: One of ConfigKeys.ALL
            value: New value (JSON-encoded for storage)
            user_id: Operator id for the audit trail

        Raises:
            ConfigurationError: unknown key or unusable value; nothing is written
        """
        value = validate_value(key, value)

        async with self.get_session() as session:
            result = await session.execute(
                select(Configuration).where(Configuration.key == key)
            )
            config = result.scalar_one_or_none()

            if config:
                old_value = config.value
                config.value = json.dumps(value)
            else:
                old_value = None
                session.add(Configuration(key=key, value=json.dumps(value)))

            old_value_parsed = None
            if old_value:
                try:
                    old_value_parsed = json.loads(old_value)
                except json.JSONDecodeError:
                    old_value_parsed = {"error": "invalid JSON", "raw": old_value}

            session.add(AuditLog(
                user_id=str(user_id),
                action='config_set',
                details=json.dumps({
                    'key': key,
                    'old_value': old_value_parsed,
                    'new_value': value
                })
            ))

        await self.load_all()
        logger.info(f"Configuration '{key}' set to {value!r} by {user_id}")

        for listener in self._listeners:
            try:
                listener(key, value)
            except Exception as e:
                logger.error(f"Configuration listener failed for '{key}': {e}", exc_info=True)
