# tiergate/conftest.py
import pytest

from tiergate.core import database
from tiergate.core.config import settings
from tiergate.features.billing.morning_provider import clear_token_cache
from tiergate.features.lifecycle.service import LifecycleManager


@pytest.fixture(scope="session", autouse=True)
def sqlite_db(tmp_path_factory):
    """
    Point the engine at a throwaway SQLite file for the whole session.

    Tables are created once; rows are cleared per test by clean_tables.
    """
    db_path = tmp_path_factory.mktemp("tiergate") / "test.db"
    url = f"sqlite:///{db_path}"
    database.dispose_engine()
    database.init_engine(url)
    database.create_all_tables()
    yield url
    database.dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def clean_tables(sqlite_db):
    """Delete every row and drop cached provider state before each test."""
    with database.get_db_session() as session:
        for table in reversed(database.metadata.sorted_tables):
            session.execute(table.delete())
    clear_token_cache()
    yield


@pytest.fixture
def enforcement_on(monkeypatch):
    monkeypatch.setattr(settings, "SUBSCRIPTION_ENABLED", "true")
    monkeypatch.setattr(settings, "NEXT_PUBLIC_SUBSCRIPTION_ENABLED", None)


@pytest.fixture
def enforcement_off(monkeypatch):
    monkeypatch.setattr(settings, "SUBSCRIPTION_ENABLED", None)
    monkeypatch.setattr(settings, "NEXT_PUBLIC_SUBSCRIPTION_ENABLED", None)


@pytest.fixture
def lifecycle():
    return LifecycleManager(grace_period_days=3)
