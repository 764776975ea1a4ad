import pytest
from outages.db import init_db, make_engine
from outages.repository import SqlOutageStore

@pytest.fixture
def sql_store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'outages.sqlite3'}")
    init_db(engine)
    yield SqlOutageStore(engine)
    engine.dispose()
