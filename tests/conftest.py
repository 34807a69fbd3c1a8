import os
import tempfile

# must be set before classjudge.config is imported
os.environ.setdefault("CLASSJUDGE_DATA_DIR", tempfile.mkdtemp(prefix="classjudge-test-"))
os.environ["AUTO_SUBMIT_ENABLED"] = "false"

import pytest_asyncio  # noqa: E402

from classjudge.models import Base, async_session, engine  # noqa: E402


@pytest_asyncio.fixture
async def db():
    """Fresh tables for every test; yields the session factory."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db):
    async with db() as session:
        yield session
