"""
Shared fixtures: a throw-away SQLite database per test and row factories.
"""

from datetime import datetime, timedelta, UTC

import pytest

from moderator.database import (
    Comment, ScoreRequest, User, get_engine, get_session_factory, init_db
)
from moderator.models import UserGroup


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'moderator.db'}"


@pytest.fixture
async def engine(database_url):
    """File-backed database so separate sessions really run concurrently."""
    engine = get_engine(database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
async def impatient_session_factory(engine, database_url):
    """Sessions on the same database that give up on a held lock after 50ms."""
    impatient = get_engine(database_url, busy_timeout=0.05)
    yield get_session_factory(impatient)
    await impatient.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def create_user(db):
    async def _create(name: str = "moderator", group: UserGroup = UserGroup.MODERATOR) -> User:
        user = User(name=name, group=group.value)
        db.add(user)
        await db.commit()
        return user
    return _create


@pytest.fixture
def create_service_user(create_user):
    async def _create(name: str = "scorer") -> User:
        return await create_user(name=name, group=UserGroup.SERVICE)
    return _create


@pytest.fixture
def create_comment(db):
    async def _create(**fields) -> Comment:
        fields.setdefault("article_id", 1)
        fields.setdefault("body", "A perfectly reasonable comment.")
        comment = Comment(**fields)
        db.add(comment)
        await db.commit()
        return comment
    return _create


@pytest.fixture
async def comment(create_comment) -> Comment:
    return await create_comment()


@pytest.fixture
def create_score_request(db):
    async def _create(comment_id: int, user_id: int, done_at=None) -> ScoreRequest:
        request = ScoreRequest(
            comment_id=comment_id,
            user_id=user_id,
            sent_at=datetime.now(UTC) - timedelta(weeks=2),
            done_at=done_at,
        )
        db.add(request)
        await db.commit()
        return request
    return _create
