"""ORM models for raw heartbeats, projects, coding sessions and daily summaries."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

CodepulseBase = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Project(CodepulseBase):
    """Per-user project, created on first heartbeat naming it."""
    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    branch = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'name', name='uq_project_user_name'),
    )


class HeartbeatRow(CodepulseBase):
    """Raw heartbeat as received. Never updated except for the consumed flag."""
    __tablename__ = 'heartbeats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=True)
    entity = Column(String(1024), nullable=False)
    type = Column(String(32), nullable=False, default='file')
    category = Column(String(64), nullable=True)
    language = Column(String(128), nullable=True)
    branch = Column(String(255), nullable=True)
    is_write = Column(Boolean, nullable=False, default=False)
    lines = Column(Integer, nullable=True)
    line_additions = Column(Integer, nullable=True)
    line_deletions = Column(Integer, nullable=True)
    time = Column(Float, nullable=False)
    machine_name = Column(String(255), nullable=True)
    dependencies = Column(Text, nullable=True)
    consumed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'entity', 'time', name='uq_heartbeat_user_entity_time'),
        Index('ix_heartbeat_user_pending_time', 'user_id', 'consumed', 'time'),
    )


class CodingSessionRow(CodepulseBase):
    """Persisted coding session. Append-only."""
    __tablename__ = 'coding_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration = Column(Integer, nullable=False)
    branch = Column(String(255), nullable=True)
    languages = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index('ix_coding_session_user_start', 'user_id', 'start_time'),
    )


class DailySummary(CodepulseBase):
    """Total coding seconds per user per calendar day. Only ever increases."""
    __tablename__ = 'daily_summaries'

    user_id = Column(String(255), primary_key=True)
    summary_date = Column(Date, primary_key=True)
    total_duration_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=_utcnow)
