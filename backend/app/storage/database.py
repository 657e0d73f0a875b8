"""Database connection and table definitions."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings

Base = declarative_base()


class RuleSetTable(Base):
    """Coach rule sets (versioned per owner + name)."""

    __tablename__ = "coach_rule_sets"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=True)
    name = Column(String(200), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    summary = Column(Text, nullable=True)
    thresholds = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("idx_coach_rule_sets_owner_name_version", "owner_id", "name", "version", unique=True),
    )


class TagDefinitionTable(Base):
    """Tag definitions owned by one rule set."""

    __tablename__ = "coach_tag_definitions"

    id = Column(String(36), primary_key=True)
    rule_set_id = Column(
        String(36), ForeignKey("coach_rule_sets.id", ondelete="CASCADE"), nullable=False
    )
    tag_key = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)
    severity = Column(String(10), nullable=False, default="INFO")
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    rule = Column(JSON, nullable=True)
    position = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_coach_tags_rule_set", "rule_set_id", "position"),
    )


class SessionTable(Base):
    """Coach sessions. `state` is written only by the evaluation job."""

    __tablename__ = "coach_sessions"

    id = Column(String(36), primary_key=True)
    rule_set_id = Column(String(36), ForeignKey("coach_rule_sets.id"), nullable=True)
    symbol = Column(String(20), nullable=False)
    timeframe_minutes = Column(Integer, nullable=False, default=1)
    state = Column(String(20), nullable=False, default="SCANNING")
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_evaluated_at = Column(DateTime(timezone=True), nullable=True)


class SnapshotTable(Base):
    """Immutable feature snapshots."""

    __tablename__ = "coach_snapshots"

    id = Column(String(36), primary_key=True)
    session_id = Column(
        String(36), ForeignKey("coach_sessions.id", ondelete="CASCADE"), nullable=False
    )
    source = Column(String(20), nullable=False, default="SNAPSHOT")
    captured_at = Column(DateTime(timezone=True), nullable=False)
    features = Column(JSON, nullable=True)
    payload = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_coach_snapshots_session_captured", "session_id", "captured_at"),
    )


class EvaluationTable(Base):
    """Per-tag evaluation results. Never updated after insert."""

    __tablename__ = "coach_evaluations"

    id = Column(String(36), primary_key=True)
    session_id = Column(
        String(36), ForeignKey("coach_sessions.id", ondelete="CASCADE"), nullable=False
    )
    snapshot_id = Column(String(36), ForeignKey("coach_snapshots.id"), nullable=False)
    tag_id = Column(String(36), ForeignKey("coach_tag_definitions.id"), nullable=False)
    status = Column(String(10), nullable=False)
    score = Column(Float, nullable=False)
    context = Column(JSON, nullable=True)
    job_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_coach_evaluations_session_created", "session_id", "created_at"),
        Index("idx_coach_evaluations_job", "job_id"),
    )


class AdviceTable(Base):
    """One advice row per evaluation."""

    __tablename__ = "coach_advice"

    id = Column(String(36), primary_key=True)
    evaluation_id = Column(
        String(36),
        ForeignKey("coach_evaluations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    session_state = Column(String(20), nullable=False)
    headline = Column(String(300), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None):
        settings = get_settings()
        url = database_url or settings.database_url

        # Convert postgresql:// to postgresql+asyncpg://
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        # Each worker coroutine holds at most one connection for the
        # duration of a job's transaction.
        self.engine = create_async_engine(
            url,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=30,
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session. Commits on success, rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()


# Global database instance
_db: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_database() -> Database:
    """Initialize the database and create tables."""
    db = get_database()
    await db.create_tables()
    return db
