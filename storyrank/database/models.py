from sqlalchemy import (
    Column, Integer, String, DateTime, Float, BigInteger, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class UserSignals(Base):
    """Persisted UserSignalRecord, keyed by user id."""
    __tablename__ = 'user_signals'

    user_id = Column(String(100), primary_key=True)

    # Raw tallies (accumulated signed sums of accepted event deltas)
    total_stories = Column(Integer, nullable=False, default=0)
    total_views = Column(BigInteger, nullable=False, default=0)
    total_likes = Column(Integer, nullable=False, default=0)
    total_dislikes = Column(Integer, nullable=False, default=0)
    follower_count = Column(Integer, nullable=False, default=0)
    rating_sum = Column(Float, nullable=False, default=0.0)
    rating_count = Column(Integer, nullable=False, default=0)

    # Ordering and tie-break
    account_created_at = Column(DateTime(timezone=True), nullable=False)
    last_event_seq = Column(BigInteger, nullable=False, default=0)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<UserSignals(user_id='{self.user_id}', seq={self.last_event_seq})>"

class ProcessedEvent(Base):
    """Event ids already applied, for idempotent replay."""
    __tablename__ = 'processed_events'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False, index=True)
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(50), nullable=False)
    seq = Column(BigInteger, nullable=False)
    applied_at = Column(DateTime, default=func.now())

    __table_args__ = (UniqueConstraint('user_id', 'event_id'),)

    def __repr__(self):
        return f"<ProcessedEvent(user_id='{self.user_id}', event_id='{self.event_id}')>"

class Configuration(Base):
    """Runtime configuration values, JSON-encoded."""
    __tablename__ = 'configurations'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    """Audit trail for configuration changes."""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    action = Column(String(50), nullable=False)
    details = Column(Text)
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', user_id='{self.user_id}')>"
