"""
Database models and session management for the moderation core.

Uses SQLAlchemy's asyncio extension with SQLite (aiosqlite) by default.
Can be configured for PostgreSQL (asyncpg) in production.
"""

import logging
from datetime import datetime, UTC
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event, text
)
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from moderator.config import get_settings
from moderator.errors import ConcurrencyConflict, ModerationError, PersistenceError
from moderator.models import AcceptanceState, UserGroup


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def get_engine(
    database_url: Optional[str] = None,
    busy_timeout: Optional[float] = None
) -> AsyncEngine:
    """Create the async database engine."""
    settings = get_settings()
    url = database_url or settings.database_url
    is_sqlite = url.startswith("sqlite")
    if busy_timeout is None:
        busy_timeout = settings.sqlite_busy_timeout

    engine = create_async_engine(
        url,
        connect_args={"timeout": busy_timeout} if is_sqlite else {},
        echo=settings.debug
    )

    if is_sqlite:
        _enable_sqlite_transactions(engine)

    return engine


def _enable_sqlite_transactions(engine: AsyncEngine):
    """
    Let SQLAlchemy own SQLite transaction boundaries.

    The driver's implicit BEGIN breaks savepoints. Reads use a deferred
    BEGIN and, with WAL journaling, never block writers. Write units ask
    for BEGIN IMMEDIATE through the `sqlite_immediate` execution option
    so concurrent writers queue on the busy timeout instead of failing
    on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("sqlite_immediate"):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def get_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every service in the package."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def is_lock_error(error: DBAPIError) -> bool:
    """Whether the database refused the work because of a competing transaction."""
    message = str(error.orig).lower()
    return "locked" in message or "could not serialize" in message or "deadlock" in message


def lock_conflict(error: DBAPIError) -> ConcurrencyConflict:
    """ConcurrencyConflict for a transaction the database has given up on."""
    return ConcurrencyConflict(str(error.orig), transaction_aborted=True)


async def begin_write(db: AsyncSession):
    """
    Open the session's transaction as a write transaction.

    On SQLite this takes the database write lock up front. A session
    that already has a transaction open keeps it as is.
    """
    if not db.in_transaction():
        await db.connection(execution_options={"sqlite_immediate": True})


async def run_write_unit(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    max_retries: int,
    label: str
) -> T:
    """
    Run `work` in one write transaction and commit it.

    A lost race rolls the whole transaction back and runs `work` again,
    up to `max_retries` more times, before failing with PersistenceError.
    Any other failure rolls back and propagates.
    """
    conflict: Optional[ConcurrencyConflict] = None
    attempts = max_retries + 1

    for attempt in range(1, attempts + 1):
        try:
            await begin_write(db)
            result = await work()
            await db.commit()
            return result
        except ConcurrencyConflict as e:
            await db.rollback()
            conflict = e
        except ModerationError:
            await db.rollback()
            raise
        except DBAPIError as e:
            await db.rollback()
            if not is_lock_error(e):
                logger.exception(f"Write of {label} failed")
                raise PersistenceError(f"Could not write {label}: {e.orig}") from e
            conflict = lock_conflict(e)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception(f"Write of {label} failed")
            raise PersistenceError(f"Could not write {label}: {e}") from e

        logger.warning(f"Write conflict on {label} (attempt {attempt}/{attempts}): {conflict}")

    raise PersistenceError(
        f"Could not write {label} after {attempts} attempts"
    ) from conflict


engine = get_engine()
SessionLocal = get_session_factory(engine)


async def get_db():
    """Yield a database session."""
    async with SessionLocal() as db:
        yield db


async def init_db(bind: Optional[AsyncEngine] = None):
    """Initialize database tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Database Models
# =============================================================================


class User(Base):
    """
    An acting identity: human moderator or automated service.

    Only `id` and `group` matter to the moderation core; the group
    decides whether decisions are recorded as User or Machine.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    group: Mapped[str] = mapped_column(
        String(20),
        default=UserGroup.GENERAL.value,
        nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )


class Comment(Base):
    """
    A user-submitted comment under moderation.

    `is_accepted` is stored as a nullable boolean for compatibility;
    use `acceptance` for the three-way verdict.
    """

    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    article_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    body: Mapped[str] = mapped_column(Text, default="")

    # Moderation flags
    is_accepted: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    is_deferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_highlighted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_batch_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow
    )

    @property
    def acceptance(self) -> AcceptanceState:
        return AcceptanceState.from_flag(self.is_accepted)


class Decision(Base):
    """
    One moderation verdict applied to a comment.

    Rows are append-only. The only mutation ever made is flipping
    `is_current_decision` to false when a newer decision supersedes it.
    """

    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    comment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("comments.id"), index=True, nullable=False
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id"), index=True, nullable=True
    )

    source: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    is_current_decision: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    __table_args__ = (
        # At most one current decision per comment
        Index(
            'uq_decisions_current_per_comment',
            'comment_id',
            unique=True,
            sqlite_where=text('is_current_decision = 1'),
            postgresql_where=text('is_current_decision'),
        ),
    )


class ScoreRequest(Base):
    """
    A scoring task dispatched to a scorer for a comment.

    Retries produce several rows for the same (comment, scorer) pair.
    `done_at` is null until the scorer reports back.
    """

    __tablename__ = "comment_score_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    comment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("comments.id"), index=True, nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), index=True, nullable=False
    )

    sent_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    done_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
