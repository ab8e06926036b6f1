"""
Moderation actions: approve, reject, defer, highlight and reset.

Each action writes the comment's new moderation flags and appends a
decision to the ledger as one transaction. Either both are committed or
neither is; a failure rolls the session back before the error reaches
the caller.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from moderator.database import Comment, User, run_write_unit
from moderator.ledger import DecisionLedger
from moderator.models import (
    AcceptanceState, CommentState, DecisionStatus, source_for_actor
)
from moderator.scoring import ScoreCompletionEvaluator
from moderator.state_store import CommentStateStore


logger = logging.getLogger(__name__)


class ModerationService:
    """
    Applies moderator and pipeline verdicts to comments.

    No verdict is terminal: any action may be applied to any comment at
    any time, and each one becomes the comment's current decision.
    """

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        self.state_store = CommentStateStore(db)
        self.ledger = DecisionLedger(db, max_retries=max_retries)
        self.scoring = ScoreCompletionEvaluator(db)

    async def approve(self, comment: Comment, actor: User, is_batch: bool = False) -> Comment:
        """Accept a comment."""
        state = CommentState(
            is_accepted=AcceptanceState.ACCEPTED,
            is_deferred=False,
            is_batch_resolved=is_batch,
        )
        return await self._moderate(comment, actor, DecisionStatus.ACCEPT, state)

    async def reject(self, comment: Comment, actor: User, is_batch: bool = False) -> Comment:
        """Reject a comment."""
        state = CommentState(
            is_accepted=AcceptanceState.REJECTED,
            is_deferred=False,
            is_batch_resolved=is_batch,
        )
        return await self._moderate(comment, actor, DecisionStatus.REJECT, state)

    async def defer(self, comment: Comment, actor: User, is_batch: bool = False) -> Comment:
        """Set a comment aside; its verdict goes back to pending."""
        state = CommentState(
            is_accepted=AcceptanceState.PENDING,
            is_deferred=True,
            is_batch_resolved=is_batch,
        )
        return await self._moderate(comment, actor, DecisionStatus.DEFER, state)

    async def highlight(self, comment: Comment, actor: User) -> Comment:
        """Highlight a comment. The verdict axis is left as is."""
        state = CommentState(is_highlighted=True)
        return await self._moderate(comment, actor, DecisionStatus.HIGHLIGHT, state)

    async def reset(self, comment: Comment, actor: User) -> Comment:
        """
        Return a comment to the unmoderated queue.

        Clears every moderation flag and retires the current decision.
        No new decision is appended, so the comment is left without a
        current decision while its history stays intact.
        """
        source = source_for_actor(actor)
        actor_id = actor.id
        comment_id = comment.id
        state = CommentState(
            is_accepted=AcceptanceState.PENDING,
            is_deferred=False,
            is_highlighted=False,
            is_batch_resolved=False,
        )

        async def apply(locked: Comment) -> Comment:
            updated = await self.state_store.set_comment_state(locked, state, commit=False)
            await self.ledger.retire_current_decision(locked.id, commit=False)
            return updated

        updated = await self._in_transaction(comment_id, apply)
        logger.info(f"Comment {comment_id} reset by {source.value} {actor_id}")
        return updated

    async def get_is_done_scoring(self, comment: Comment) -> bool:
        """Whether automated decisioning may proceed for this comment."""
        return await self.scoring.get_is_done_scoring(comment)

    async def _moderate(
        self,
        comment: Comment,
        actor: User,
        status: DecisionStatus,
        state: CommentState
    ) -> Comment:
        source = source_for_actor(actor)
        actor_id = actor.id

        async def apply(locked: Comment) -> Comment:
            updated = await self.state_store.set_comment_state(locked, state, commit=False)
            await self.ledger.record_decision(updated, status, source, actor_id, commit=False)
            return updated

        return await self._in_transaction(comment.id, apply)

    async def _in_transaction(self, comment_id: int, apply) -> Comment:
        """
        Run `apply` on the locked comment and commit once.

        A lost race rolls the whole unit back and runs it again from the
        comment lock.
        """
        async def unit() -> Comment:
            locked = await self.state_store.get_comment(comment_id, for_update=True)
            return await apply(locked)

        return await run_write_unit(
            self.db, unit, self.ledger.max_retries, f"moderation of comment {comment_id}"
        )
