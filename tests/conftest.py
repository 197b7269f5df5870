"""Shared test fixtures."""

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from musicleague.config import Settings
from musicleague.core import membership
from musicleague.db.engine import create_engine, create_tables, get_session
from musicleague.db.models import LeagueRow
from musicleague.db.repository import Repository


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(
        musicleague_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        session_secret_key="test-secret-key-for-testing",
        musicleague_auto_advance=False,
    )


@pytest.fixture
async def engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def file_engine(tmp_path: Path) -> AsyncEngine:
    """A file-backed engine, so concurrent sessions get their own connections."""
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'musicleague.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def repo(engine: AsyncEngine) -> Repository:
    """Yield a repository with a session bound to the in-memory database."""
    async with get_session(engine) as session:
        yield Repository(session)


@pytest.fixture
async def league(repo: Repository) -> LeagueRow:
    """A private league owned by ``owner`` with members alice, bob and carol."""
    league = await membership.create_league(repo, owner_id="owner", name="Test League")
    for user_id in ("alice", "bob", "carol"):
        await repo.add_member(league.id, user_id)
    return league
