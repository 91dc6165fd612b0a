import pytest
import pytest_asyncio
from sqlalchemy import event

import case_dataloader.models as sm
from case_dataloader.db import create_session_factory
from tests.datum import seed


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # file database, loaders open several connections at once
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'case.db'}")
    yield factory
    await factory.kw['bind'].dispose()


@pytest_asyncio.fixture
async def seeded(session_factory):
    await seed(session_factory)
    return session_factory


@pytest_asyncio.fixture
async def legacy_seeded(session_factory):
    """schema from before `event_entities` existed"""
    tables = [t for t in sm.Base.metadata.sorted_tables if t.name != 'event_entities']
    await seed(session_factory, tables=tables)
    return session_factory


@pytest.fixture
def select_counter():
    """count SELECT statements sent to the database of a session factory"""
    def attach(session_factory):
        counter = {'select': 0}

        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith('SELECT'):
                counter['select'] += 1

        event.listen(session_factory.kw['bind'].sync_engine, 'before_cursor_execute', before_cursor_execute)
        return counter

    return attach
