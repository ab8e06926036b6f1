"""Tests for approve / reject / defer / highlight / reset."""

import asyncio
import logging

import pytest

from moderator.database import Comment, begin_write
from moderator.errors import (
    ConcurrencyConflict, NotFoundError, PersistenceError, ValidationError
)
from moderator.ledger import DecisionLedger
from moderator.models import AcceptanceState
from moderator.moderation_service import ModerationService


async def assert_recorded_decision(db, comment_id: int, status: str, source: str, user_id: int):
    decisions = await DecisionLedger(db).get_decisions(comment_id)

    assert len(decisions) == 1
    decision = decisions[0]
    assert decision.comment_id == comment_id
    assert decision.user_id == user_id
    assert decision.source == source
    assert decision.status == status
    assert decision.is_current_decision is True


class TestApprove:

    @pytest.mark.asyncio
    async def test_approves_and_records_decision(self, db, comment, create_user):
        user = await create_user()

        updated = await ModerationService(db).approve(comment, user, False)

        assert updated.id == comment.id
        assert updated.is_accepted is True
        assert updated.is_deferred is False
        assert updated.is_batch_resolved is False
        await assert_recorded_decision(db, comment.id, "Accept", "User", user.id)

    @pytest.mark.asyncio
    async def test_batch_flag(self, db, comment, create_user):
        user = await create_user()

        updated = await ModerationService(db).approve(comment, user, True)

        assert updated.is_batch_resolved is True

    @pytest.mark.asyncio
    async def test_service_actor_records_machine_source(self, db, comment, create_service_user):
        scorer = await create_service_user()

        await ModerationService(db).approve(comment, scorer, False)

        await assert_recorded_decision(db, comment.id, "Accept", "Machine", scorer.id)

    @pytest.mark.asyncio
    async def test_clears_deferral(self, db, create_comment, create_user):
        comment = await create_comment(is_deferred=True)
        user = await create_user()

        updated = await ModerationService(db).approve(comment, user)

        assert updated.is_deferred is False
        assert updated.acceptance is AcceptanceState.ACCEPTED


class TestReject:

    @pytest.mark.asyncio
    async def test_rejects_and_records_decision(self, db, comment, create_user):
        user = await create_user()

        updated = await ModerationService(db).reject(comment, user, False)

        assert updated.id == comment.id
        assert updated.is_accepted is False
        assert updated.is_deferred is False
        await assert_recorded_decision(db, comment.id, "Reject", "User", user.id)


class TestDefer:

    @pytest.mark.asyncio
    async def test_defers_and_records_decision(self, db, comment, create_user):
        user = await create_user()

        updated = await ModerationService(db).defer(comment, user, False)

        assert updated.id == comment.id
        assert updated.is_accepted is None
        assert updated.acceptance is AcceptanceState.PENDING
        assert updated.is_deferred is True
        await assert_recorded_decision(db, comment.id, "Defer", "User", user.id)

    @pytest.mark.asyncio
    async def test_defer_after_approve_returns_to_pending(self, db, comment, create_user):
        user = await create_user()
        service = ModerationService(db)

        await service.approve(comment, user)
        updated = await service.defer(comment, user)

        assert updated.acceptance is AcceptanceState.PENDING
        assert (await service.ledger.get_current_decision(comment.id)).status == "Defer"


class TestHighlight:

    @pytest.mark.asyncio
    async def test_highlights_and_records_decision(self, db, comment, create_user):
        user = await create_user()

        updated = await ModerationService(db).highlight(comment, user)

        assert updated.id == comment.id
        assert updated.is_highlighted is True
        await assert_recorded_decision(db, comment.id, "Highlight", "User", user.id)

    @pytest.mark.asyncio
    async def test_leaves_verdict_untouched(self, db, comment, create_user):
        user = await create_user()
        service = ModerationService(db)

        await service.approve(comment, user, True)
        updated = await service.highlight(comment, user)

        assert updated.is_accepted is True
        assert updated.is_batch_resolved is True
        assert updated.is_highlighted is True


class TestRemoderation:

    @pytest.mark.asyncio
    async def test_approve_then_reject_by_different_users(self, db, comment, create_user):
        first = await create_user("first")
        second = await create_user("second")
        service = ModerationService(db)

        await service.approve(comment, first, False)
        updated = await service.reject(comment, second, False)

        decisions = await service.ledger.get_decisions(comment.id)
        assert len(decisions) == 2
        assert decisions[0].status == "Accept"
        assert decisions[0].user_id == first.id
        assert decisions[0].is_current_decision is False
        assert decisions[1].status == "Reject"
        assert decisions[1].user_id == second.id
        assert decisions[1].is_current_decision is True
        assert updated.is_accepted is False

    @pytest.mark.asyncio
    async def test_same_verdict_twice(self, db, comment, create_user):
        user = await create_user()
        service = ModerationService(db)

        await service.approve(comment, user)
        await service.approve(comment, user)

        decisions = await service.ledger.get_decisions(comment.id)
        assert [d.is_current_decision for d in decisions] == [False, True]


class TestReset:

    @pytest.mark.asyncio
    async def test_returns_comment_to_queue(self, db, comment, create_user):
        user = await create_user()
        service = ModerationService(db)

        await service.approve(comment, user, True)
        await service.highlight(comment, user)
        updated = await service.reset(comment, user)

        assert updated.acceptance is AcceptanceState.PENDING
        assert updated.is_deferred is False
        assert updated.is_highlighted is False
        assert updated.is_batch_resolved is False
        assert await service.ledger.get_current_decision(comment.id) is None
        assert len(await service.ledger.get_decisions(comment.id)) == 2


class TestActors:

    @pytest.mark.asyncio
    async def test_unknown_actor_group(self, db, comment, create_user):
        user = await create_user()
        user.group = "visitor"

        with pytest.raises(ValidationError):
            await ModerationService(db).approve(comment, user)

    @pytest.mark.asyncio
    async def test_missing_actor(self, db, comment):
        with pytest.raises(NotFoundError):
            await ModerationService(db).reject(comment, None)

    @pytest.mark.asyncio
    async def test_missing_comment(self, db, create_user):
        user = await create_user()
        with pytest.raises(NotFoundError):
            await ModerationService(db).approve(Comment(id=9999), user)


class TestAtomicity:

    @pytest.mark.asyncio
    async def test_failed_decision_rolls_back_state(self, db, comment, create_user, monkeypatch):
        user = await create_user()
        comment_id = comment.id

        async def broken(self, *args):
            raise PersistenceError("disk I/O error")

        monkeypatch.setattr(DecisionLedger, "_append", broken)

        with pytest.raises(PersistenceError):
            await ModerationService(db).approve(comment, user)

        await db.refresh(comment)
        assert comment.is_accepted is None
        assert await DecisionLedger(db).get_decisions(comment_id) == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_roll_back_state(self, db, comment, create_user, monkeypatch):
        user = await create_user()
        comment_id = comment.id

        async def conflicting(self, *args):
            raise ConcurrencyConflict("another writer won")

        monkeypatch.setattr(DecisionLedger, "_append", conflicting)

        with pytest.raises(PersistenceError):
            await ModerationService(db, max_retries=2).defer(comment, user)

        await db.refresh(comment)
        assert comment.is_deferred is False
        assert await DecisionLedger(db).get_decisions(comment_id) == []


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_moderators_leave_one_current_decision(
        self, db, comment, create_user, session_factory
    ):
        users = [await create_user(f"moderator-{i}") for i in range(6)]
        comment_id = comment.id
        actions = ["approve", "reject", "defer", "highlight", "approve", "reject"]

        async def moderate(action, user):
            async with session_factory() as session:
                service = ModerationService(session)
                target = await service.state_store.get_comment(comment_id)
                await getattr(service, action)(target, user)

        await asyncio.gather(*(moderate(a, u) for a, u in zip(actions, users)))

        decisions = await DecisionLedger(db).get_decisions(comment_id)
        assert len(decisions) == len(actions)
        assert sum(d.is_current_decision for d in decisions) == 1
        assert decisions[-1].is_current_decision is True

    @pytest.mark.asyncio
    async def test_different_comments_in_parallel(
        self, db, create_comment, create_user, session_factory
    ):
        user = await create_user()
        comments = [await create_comment() for _ in range(4)]
        comment_ids = [c.id for c in comments]

        async def approve(comment_id):
            async with session_factory() as session:
                service = ModerationService(session)
                target = await service.state_store.get_comment(comment_id)
                await service.approve(target, user)

        await asyncio.gather(*(approve(cid) for cid in comment_ids))

        ledger = DecisionLedger(db)
        for comment_id in comment_ids:
            current = await ledger.get_current_decision(comment_id)
            assert current.status == "Accept"

    @pytest.mark.asyncio
    async def test_open_read_does_not_block_moderation(
        self, comment, create_comment, create_user, session_factory, impatient_session_factory
    ):
        user = await create_user()
        target = await create_comment()
        target_id = target.id

        async with session_factory() as reader:
            reading = await reader.get(Comment, comment.id)
            assert await ModerationService(reader).get_is_done_scoring(reading) is False
            assert reader.in_transaction()

            async with impatient_session_factory() as writer:
                service = ModerationService(writer, max_retries=0)
                loaded = await service.state_store.get_comment(target_id)
                updated = await service.approve(loaded, user)

        assert updated.id == target_id
        assert updated.is_accepted is True


class TestLockContention:

    @pytest.mark.asyncio
    async def test_waits_out_a_held_write_lock(
        self, db, comment, create_user, session_factory, impatient_session_factory, caplog
    ):
        caplog.set_level(logging.WARNING, logger="moderator.database")
        user = await create_user()
        comment_id = comment.id

        async with session_factory() as holder:
            await begin_write(holder)

            async def release():
                await asyncio.sleep(0.2)
                await holder.rollback()

            async def approve():
                async with impatient_session_factory() as session:
                    service = ModerationService(session, max_retries=50)
                    target = await service.state_store.get_comment(comment_id)
                    return await service.approve(target, user)

            _, updated = await asyncio.gather(release(), approve())

        assert updated.is_accepted is True
        assert "Write conflict on moderation of comment" in caplog.text
        await assert_recorded_decision(db, comment_id, "Accept", "User", user.id)

    @pytest.mark.asyncio
    async def test_escalates_when_the_lock_is_never_released(
        self, db, comment, create_user, session_factory, impatient_session_factory
    ):
        user = await create_user()
        comment_id = comment.id

        async with session_factory() as holder:
            await begin_write(holder)
            try:
                async with impatient_session_factory() as session:
                    with pytest.raises(PersistenceError) as exc_info:
                        await ModerationService(session, max_retries=1).reject(comment, user)
            finally:
                await holder.rollback()

        conflict = exc_info.value.__cause__
        assert isinstance(conflict, ConcurrencyConflict)
        assert conflict.transaction_aborted is True
        await db.refresh(comment)
        assert comment.is_accepted is None
        assert await DecisionLedger(db).get_decisions(comment_id) == []

    @pytest.mark.asyncio
    async def test_aborted_transaction_reapplies_state(self, db, comment, create_user, monkeypatch):
        user = await create_user()
        user_id = user.id
        comment_id = comment.id
        original = DecisionLedger._append
        attempts = []

        async def aborted_once(self, *args):
            attempts.append(args)
            if len(attempts) == 1:
                raise ConcurrencyConflict("deadlock detected", transaction_aborted=True)
            return await original(self, *args)

        monkeypatch.setattr(DecisionLedger, "_append", aborted_once)

        updated = await ModerationService(db, max_retries=1).defer(comment, user, True)

        assert len(attempts) == 2
        assert updated.is_deferred is True
        assert updated.is_batch_resolved is True
        await assert_recorded_decision(db, comment_id, "Defer", "User", user_id)


class TestIsDoneScoring:

    @pytest.mark.asyncio
    async def test_delegates_to_evaluator(self, db, comment, create_service_user, create_score_request):
        from datetime import datetime, UTC

        scorer = await create_service_user()
        await create_score_request(comment.id, scorer.id, done_at=datetime.now(UTC))

        assert await ModerationService(db).get_is_done_scoring(comment) is True
