"""
Score completion checks for comments.

A comment is done scoring once every scorer it was sent to has reported
back at least once. Retried requests to the same scorer are treated as
a multiset: one completed request settles that scorer regardless of how
many others are still pending.
"""

import logging
from datetime import datetime, UTC
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from moderator.config import get_settings
from moderator.database import (
    Comment, ScoreRequest, is_lock_error, lock_conflict, run_write_unit
)
from moderator.errors import NotFoundError, PersistenceError
from moderator.models import ScorerStatus, ScoringStatusResponse


logger = logging.getLogger(__name__)


def scorer_completion(requests: Iterable[ScoreRequest]) -> Dict[int, bool]:
    """Map each scorer to whether any of its requests is done."""
    done_by_scorer: Dict[int, bool] = {}
    for request in requests:
        done = request.done_at is not None
        done_by_scorer[request.user_id] = done_by_scorer.get(request.user_id, False) or done
    return done_by_scorer


def scores_complete(requests: Iterable[ScoreRequest]) -> bool:
    """
    Whether every distinct scorer has completed at least one request.

    No requests at all means scoring was never dispatched, which is not
    complete.
    """
    done_by_scorer = scorer_completion(requests)
    return bool(done_by_scorer) and all(done_by_scorer.values())


class ScoreCompletionEvaluator:
    """Reads score requests for a comment and evaluates completion."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_score_requests(self, comment_id: int) -> List[ScoreRequest]:
        """All score requests sent for a comment, oldest first."""
        try:
            result = await self.db.execute(
                select(ScoreRequest)
                .where(ScoreRequest.comment_id == comment_id)
                .order_by(ScoreRequest.sent_at, ScoreRequest.id)
            )
        except SQLAlchemyError as e:
            logger.exception(f"Failed to read score requests for comment {comment_id}")
            raise PersistenceError(f"Could not read score requests: {e}") from e
        return list(result.scalars().all())

    async def get_is_done_scoring(self, comment: Comment) -> bool:
        """Whether all scorers have reported back for this comment."""
        requests = await self.get_score_requests(comment.id)
        return scores_complete(requests)

    async def get_scoring_status(self, comment_id: int) -> ScoringStatusResponse:
        """Per-scorer breakdown of completion for a comment."""
        requests = await self.get_score_requests(comment_id)
        done_by_scorer = scorer_completion(requests)

        counts: Dict[int, int] = {}
        for request in requests:
            counts[request.user_id] = counts.get(request.user_id, 0) + 1

        return ScoringStatusResponse(
            comment_id=comment_id,
            is_done_scoring=scores_complete(requests),
            scorers=[
                ScorerStatus(user_id=user_id, requests=counts[user_id], done=done)
                for user_id, done in sorted(done_by_scorer.items())
            ]
        )

    async def complete_request(
        self,
        score_request_id: int,
        done_at: Optional[datetime] = None
    ) -> ScoreRequest:
        """
        Stamp a score request as done when its scorer reports a result.

        A request that is already done keeps its original timestamp.
        """
        stamped = False

        async def stamp() -> ScoreRequest:
            nonlocal stamped
            try:
                request = await self.db.get(
                    ScoreRequest, score_request_id, populate_existing=True
                )
            except OperationalError as e:
                if is_lock_error(e):
                    raise lock_conflict(e) from e
                raise PersistenceError(f"Could not read score request: {e.orig}") from e
            except SQLAlchemyError as e:
                raise PersistenceError(f"Could not read score request: {e}") from e

            if request is None:
                raise NotFoundError(f"Score request {score_request_id} not found")

            stamped = request.done_at is None
            if stamped:
                request.done_at = done_at or datetime.now(UTC)
            return request

        request = await run_write_unit(
            self.db,
            stamp,
            get_settings().decision_max_retries,
            f"score request {score_request_id}"
        )
        if stamped:
            logger.info(
                f"Score request {score_request_id} done for comment {request.comment_id} "
                f"(scorer {request.user_id})"
            )
        return request
