"""
Shared fixtures: a fresh SQLite database per test and a session on it.
"""

import os

# Must be set before revenue_agent.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_revenue_agent.db")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ["RESEND_API_KEY"] = ""

import pytest_asyncio

from revenue_agent.db import init_db, drop_db, async_session_maker


@pytest_asyncio.fixture
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def db_session(setup_database):
    """Get a database session"""
    async with async_session_maker() as session:
        yield session
