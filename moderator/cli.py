"""
Operator command line for the moderation core.

    moderator init-db
    moderator decisions COMMENT_ID
    moderator scoring-status COMMENT_ID
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from moderator.config import get_settings
from moderator.database import engine, get_session_factory, init_db
from moderator.errors import ModerationError
from moderator.ledger import DecisionLedger
from moderator.models import DecisionHistoryResponse, DecisionResponse
from moderator.scoring import ScoreCompletionEvaluator
from moderator.state_store import CommentStateStore


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moderator",
        description="Comment moderation decision ledger"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")

    decisions = subparsers.add_parser("decisions", help="Show a comment's decision history")
    decisions.add_argument("comment_id", type=int)

    scoring = subparsers.add_parser("scoring-status", help="Show whether scoring has finished")
    scoring.add_argument("comment_id", type=int)

    return parser


async def decision_history(db: AsyncSession, comment_id: int) -> DecisionHistoryResponse:
    """Decision history for a comment, validated that the comment exists."""
    await CommentStateStore(db).get_comment(comment_id)

    decisions = await DecisionLedger(db).get_decisions(comment_id)
    responses = [DecisionResponse.model_validate(d) for d in decisions]
    current = next((r for r in responses if r.is_current_decision), None)

    return DecisionHistoryResponse(comment_id=comment_id, current=current, decisions=responses)


async def run_command(args: argparse.Namespace, bind: AsyncEngine) -> str:
    """Execute a parsed command and return its output."""
    if args.command == "init-db":
        await init_db(bind)
        return "Database initialized"

    async with get_session_factory(bind)() as db:
        if args.command == "decisions":
            history = await decision_history(db, args.comment_id)
            return history.model_dump_json(indent=2)

        if args.command == "scoring-status":
            await CommentStateStore(db).get_comment(args.comment_id)
            status = await ScoreCompletionEvaluator(db).get_scoring_status(args.comment_id)
            return status.model_dump_json(indent=2)

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    args = build_parser().parse_args(argv)

    async def _run() -> str:
        try:
            return await run_command(args, engine)
        finally:
            await engine.dispose()

    try:
        output = asyncio.run(_run())
    except ModerationError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    print(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
