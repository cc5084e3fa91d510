from typing import List, Dict, Set
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select
from contextlib import asynccontextmanager

from storyrank.config import Config
from storyrank.data_models.leaderboard import SignalEvent, UserSignalRecord, to_utc
from storyrank.database.models import Base, UserSignals, ProcessedEvent
from storyrank.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: str = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = Config.async_database_url(self.database_url)

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self):
        """Async session factory handed to services"""
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context will be committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await db.save_signal_record(record, event, session=session)
                # Record and processed event id commit together here
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Signal record operations
    async def load_signal_records(self) -> List[UserSignalRecord]:
        """Load every persisted signal record in user id order"""
        async with self.get_session() as session:
            result = await session.execute(
                select(UserSignals).order_by(UserSignals.user_id)
            )
            return [self._to_record(row) for row in result.scalars().all()]

    async def load_processed_event_ids(self) -> Dict[str, Set[str]]:
        """Load applied event ids grouped by user"""
        async with self.get_session() as session:
            result = await session.execute(
                select(ProcessedEvent.user_id, ProcessedEvent.event_id)
            )
            processed: Dict[str, Set[str]] = {}
            for user_id, event_id in result:
                processed.setdefault(user_id, set()).add(event_id)
            return processed

    async def save_signal_record(
        self,
        record: UserSignalRecord,
        event: SignalEvent,
        session: AsyncSession
    ):
        """
        Upsert a signal record and mark its event as processed.

        The caller owns the transaction so both writes commit together.
        """
        await session.merge(self._to_row(record))
        session.add(ProcessedEvent(
            user_id=event.user_id,
            event_id=event.event_id,
            event_type=event.type,
            seq=event.seq
        ))
        await session.flush()

    @staticmethod
    def _to_record(row: UserSignals) -> UserSignalRecord:
        return UserSignalRecord(
            user_id=row.user_id,
            account_created_at=to_utc(row.account_created_at),
            total_stories=row.total_stories or 0,
            total_views=row.total_views or 0,
            total_likes=row.total_likes or 0,
            total_dislikes=row.total_dislikes or 0,
            follower_count=row.follower_count or 0,
            rating_sum=row.rating_sum or 0.0,
            rating_count=row.rating_count or 0,
            last_event_seq=row.last_event_seq or 0,
            last_activity_at=to_utc(row.last_activity_at) if row.last_activity_at else None
        )

    @staticmethod
    def _to_row(record: UserSignalRecord) -> UserSignals:
        return UserSignals(
            user_id=record.user_id,
            total_stories=record.total_stories,
            total_views=record.total_views,
            total_likes=record.total_likes,
            total_dislikes=record.total_dislikes,
            follower_count=record.follower_count,
            rating_sum=record.rating_sum,
            rating_count=record.rating_count,
            account_created_at=record.account_created_at,
            last_event_seq=record.last_event_seq,
            last_activity_at=record.last_activity_at
        )
