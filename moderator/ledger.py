"""
Append-only ledger of moderation decisions.

Every moderation action appends one Decision row and marks it as the
comment's current decision. Older rows are never edited except to clear
their `is_current_decision` flag, and never deleted.

The single-current invariant is held three ways:
- the comment row is locked for the append (PostgreSQL FOR UPDATE,
  SQLite's database write lock),
- flip and insert run in one savepoint,
- a partial unique index rejects a second current row, which is treated
  as a lost race and retried in a fresh savepoint.

Lock timeouts, serialization failures and deadlocks abort the whole
transaction; those are retried by the enclosing write unit instead.
"""

import logging
from datetime import datetime, UTC
from typing import List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from moderator.config import get_settings
from moderator.database import (
    Comment, Decision, is_lock_error, lock_conflict, run_write_unit
)
from moderator.errors import (
    ConcurrencyConflict, NotFoundError, PersistenceError, ValidationError
)
from moderator.models import DecisionSource, DecisionStatus


logger = logging.getLogger(__name__)

CURRENT_DECISION_INDEX = "uq_decisions_current_per_comment"


def _is_current_decision_conflict(error: IntegrityError) -> bool:
    """Whether an integrity error came from the one-current-row index."""
    message = str(error.orig).lower()
    return (
        CURRENT_DECISION_INDEX in message
        or "unique constraint failed: decisions.comment_id" in message
    )


class DecisionLedger:
    """
    Records moderation decisions for comments.

    Calls for different comments never wait on each other. Calls for the
    same comment are serialized by the database; a lost race is retried
    up to `max_retries` times before failing with PersistenceError.
    """

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        if max_retries is None:
            max_retries = get_settings().decision_max_retries
        self.max_retries = max_retries

    async def record_decision(
        self,
        comment: Comment,
        status: Union[DecisionStatus, str],
        source: Union[DecisionSource, str],
        user_id: Optional[int],
        commit: bool = True
    ) -> Decision:
        """
        Append a new current decision for a comment.

        Clears the current flag on every existing decision for the
        comment and inserts the new one, atomically. With `commit=False`
        the rows are flushed but the enclosing transaction stays open.
        """
        try:
            status = DecisionStatus(status)
            source = DecisionSource(source)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        comment_id = comment.id

        async def record() -> Decision:
            return await self._record(comment_id, status, source, user_id)

        if commit:
            decision = await run_write_unit(
                self.db, record, self.max_retries, f"decision for comment {comment_id}"
            )
        else:
            decision = await record()

        logger.info(
            f"Recorded {status.value} decision {decision.id} on comment {comment_id} "
            f"({source.value} {user_id})"
        )
        return decision

    async def _record(
        self,
        comment_id: int,
        status: DecisionStatus,
        source: DecisionSource,
        user_id: Optional[int]
    ) -> Decision:
        """Append in a savepoint, retrying races the savepoint can recover from."""
        conflict: Optional[ConcurrencyConflict] = None
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return await self._append(comment_id, status, source, user_id)
            except ConcurrencyConflict as e:
                if e.transaction_aborted:
                    raise
                conflict = e
                logger.warning(
                    f"Decision conflict on comment {comment_id} "
                    f"(attempt {attempt}/{attempts}): {e}"
                )

        raise PersistenceError(
            f"Could not record decision for comment {comment_id} "
            f"after {attempts} attempts"
        ) from conflict

    async def _append(
        self,
        comment_id: int,
        status: DecisionStatus,
        source: DecisionSource,
        user_id: Optional[int]
    ) -> Decision:
        """Flip and insert inside one savepoint."""
        try:
            async with self.db.begin_nested():
                locked = await self.db.execute(
                    select(Comment.id).where(Comment.id == comment_id).with_for_update()
                )
                if locked.scalar_one_or_none() is None:
                    raise NotFoundError(f"Comment {comment_id} not found")

                await self.db.execute(
                    update(Decision)
                    .where(
                        Decision.comment_id == comment_id,
                        Decision.is_current_decision.is_(True)
                    )
                    .values(is_current_decision=False)
                    .execution_options(synchronize_session="fetch")
                )

                decision = Decision(
                    comment_id=comment_id,
                    user_id=user_id,
                    source=source.value,
                    status=status.value,
                    is_current_decision=True,
                    created_at=datetime.now(UTC),
                )
                self.db.add(decision)
                await self.db.flush()
        except IntegrityError as e:
            if _is_current_decision_conflict(e):
                raise ConcurrencyConflict(str(e.orig)) from e
            raise PersistenceError(f"Could not record decision: {e.orig}") from e
        except OperationalError as e:
            if is_lock_error(e):
                raise lock_conflict(e) from e
            raise PersistenceError(f"Could not record decision: {e.orig}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not record decision: {e}") from e

        return decision

    async def retire_current_decision(self, comment_id: int, commit: bool = True) -> int:
        """
        Clear the current flag for a comment without adding a decision.

        Returns the number of rows flipped (0 or 1).
        """
        async def retire() -> int:
            return await self._retire(comment_id)

        if commit:
            return await run_write_unit(
                self.db, retire, self.max_retries, f"retirement for comment {comment_id}"
            )
        return await retire()

    async def _retire(self, comment_id: int) -> int:
        try:
            result = await self.db.execute(
                update(Decision)
                .where(
                    Decision.comment_id == comment_id,
                    Decision.is_current_decision.is_(True)
                )
                .values(is_current_decision=False)
                .execution_options(synchronize_session="fetch")
            )
        except OperationalError as e:
            if is_lock_error(e):
                raise lock_conflict(e) from e
            raise PersistenceError(f"Could not retire decision: {e.orig}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not retire decision: {e}") from e
        return result.rowcount

    async def get_decisions(self, comment_id: int) -> List[Decision]:
        """Full decision history for a comment, oldest first."""
        try:
            result = await self.db.execute(
                select(Decision)
                .where(Decision.comment_id == comment_id)
                .order_by(Decision.created_at, Decision.id)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not read decisions: {e}") from e
        return list(result.scalars().all())

    async def get_current_decision(self, comment_id: int) -> Optional[Decision]:
        """The operative decision for a comment, if any."""
        try:
            result = await self.db.execute(
                select(Decision).where(
                    Decision.comment_id == comment_id,
                    Decision.is_current_decision.is_(True)
                )
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not read current decision: {e}") from e
        return result.scalar_one_or_none()
