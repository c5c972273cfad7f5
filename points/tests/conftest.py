import pytest

from points.actions import PointsEconomy
from points.store import InMemoryAccountStore, SQLiteAccountStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryAccountStore()
    else:
        sqlite_store = SQLiteAccountStore(str(tmp_path / "points.db"), retry_base_delay=0)
        yield sqlite_store
        sqlite_store.close()


@pytest.fixture
def economy(store):
    return PointsEconomy(store=store)
