"""
Signal store for the storyrank leaderboard engine.

Holds the authoritative in-memory copy of every UserSignalRecord, backed by the
`user_signals` table. Records are immutable dataclasses, so a reader always
sees a complete record: writers build a new record and swap it in only after
it has been persisted. Owns no ranking logic.
"""

import asyncio
import logging
import weakref
from typing import Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from storyrank.data_models.leaderboard import SignalEvent, UserSignalRecord
from storyrank.database.database import Database
from storyrank.utils.leaderboard_exceptions import ConcurrentUpdateConflict, DatabaseError

logger = logging.getLogger(__name__)


class SignalStore:
    """Durable per-user tally of raw activity counters."""

    def __init__(self, database: Database):
        self.database = database
        self._records: Dict[str, UserSignalRecord] = {}
        self._processed: Dict[str, Set[str]] = {}
        # Held or awaited locks stay alive; idle users drop out of the map
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def load(self):
        """Hydrate records and processed event ids from the database."""
        records = await self.database.load_signal_records()
        self._records = {record.user_id: record for record in records}
        self._processed = await self.database.load_processed_event_ids()
        logger.info(f"Loaded {len(self._records)} signal records from storage")

    async def load_persisted(self) -> List[UserSignalRecord]:
        """Read every persisted record in user id order, bypassing memory."""
        return await self.database.load_signal_records()

    def user_lock(self, user_id: str) -> asyncio.Lock:
        """Exclusive section for one user's updates."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def get(self, user_id: str) -> Optional[UserSignalRecord]:
        return self._records.get(user_id)

    def all_records(self) -> List[UserSignalRecord]:
        return [self._records[user_id] for user_id in sorted(self._records)]

    def has_processed(self, user_id: str, event_id: str) -> bool:
        return event_id in self._processed.get(user_id, ())

    def __len__(self) -> int:
        return len(self._records)

    async def commit(self, record: UserSignalRecord, event: SignalEvent) -> bool:
        """
        Persist a new record version together with its event id, then publish it.

        Must be called while holding ``user_lock(record.user_id)``.

        Returns:
            False when the event id was already stored by another writer

        Raises:
            ConcurrentUpdateConflict: transient storage contention, safe to retry
            DatabaseError: any other storage failure
        """
        try:
            async with self.database.transaction() as session:
                await self.database.save_signal_record(record, event, session=session)
        except IntegrityError:
            logger.info(f"Event {event.event_id} for user {event.user_id} already stored")
            self._processed.setdefault(event.user_id, set()).add(event.event_id)
            return False
        except OperationalError as e:
            raise ConcurrentUpdateConflict(record.user_id, str(e.orig or e)) from e
        except SQLAlchemyError as e:
            raise DatabaseError(f"saving signals for user {record.user_id}", str(e)) from e

        self._records[record.user_id] = record
        self._processed.setdefault(record.user_id, set()).add(event.event_id)
        return True
