import os
import sys

import pytest
import pytest_asyncio

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from replay_service import storage as st


@pytest_asyncio.fixture(scope="function")
async def db_sessionmaker(tmp_path):
    engine, sessionmaker = await st.create_engine_and_sessionmaker(
        f"sqlite+aiosqlite:///{tmp_path / 'replay.db'}"
    )
    await st.init_models(engine)
    try:
        yield sessionmaker
    finally:
        await engine.dispose()


@pytest.fixture
def sleep_calls():
    return []


@pytest.fixture
def fake_sleep(sleep_calls):
    """asyncio.sleep stand-in that records the delay and returns at once."""
    async def _sleep(seconds: float) -> None:
        sleep_calls.append(seconds)

    return _sleep
