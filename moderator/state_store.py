"""
Persistence of moderation flags onto comments.
"""

import logging
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from moderator.database import Comment, begin_write, is_lock_error, lock_conflict
from moderator.errors import NotFoundError, PersistenceError
from moderator.models import StateInput, merge_state


logger = logging.getLogger(__name__)


class CommentStateStore:
    """
    Reads comments and writes merged moderation flags onto them.

    Writes are flushed into the session's current transaction; pass
    `commit=False` to leave the commit to an enclosing unit of work.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_comment(self, comment_id: int, for_update: bool = False) -> Comment:
        """
        Load a comment by id.

        `for_update` takes a row lock on backends that support one.
        """
        query = select(Comment).where(Comment.id == comment_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)

        try:
            result = await self.db.execute(query)
        except OperationalError as e:
            if is_lock_error(e):
                raise lock_conflict(e) from e
            logger.exception(f"Failed to load comment {comment_id}")
            raise PersistenceError(f"Could not load comment: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.exception(f"Failed to load comment {comment_id}")
            raise PersistenceError(f"Could not load comment: {e}") from e

        comment = result.scalar_one_or_none()
        if comment is None:
            raise NotFoundError(f"Comment {comment_id} not found")
        return comment

    async def set_comment_state(
        self,
        comment: Comment,
        state: StateInput,
        data: Optional[StateInput] = None,
        commit: bool = True
    ) -> Comment:
        """
        Apply moderation flags to a comment and persist it.

        `state` wins over `data` on any field present in both. Fields in
        neither are left untouched. Returns the same comment instance.

        A lock timeout raises ConcurrencyConflict with the session rolled
        back; the caller decides whether to try again.
        """
        fields = merge_state(state, data).fields()
        comment_id = comment.id

        try:
            if commit:
                await begin_write(self.db)
            self.db.add(comment)

            for name, value in fields.items():
                if name == "is_accepted":
                    comment.is_accepted = value.as_flag()
                else:
                    setattr(comment, name, value)
            comment.updated_at = datetime.now(UTC)

            await self.db.flush()
            if commit:
                await self.db.commit()
        except OperationalError as e:
            await self.db.rollback()
            if is_lock_error(e):
                raise lock_conflict(e) from e
            logger.exception(f"Failed to save state for comment {comment_id}")
            raise PersistenceError(f"Could not save comment state: {e.orig}") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.exception(f"Failed to save state for comment {comment_id}")
            raise PersistenceError(f"Could not save comment state: {e}") from e

        logger.debug(f"Comment {comment_id} state set: {sorted(fields)}")
        return comment
