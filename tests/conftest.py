import pytest

from acidjob.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.fixture
def memory_repo():
    return InMemoryRunRepository()


@pytest.fixture
def sqlite_repo(tmp_path):
    return SQLiteRunRepository(tmp_path / "runs.db")


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    """Every Run repository backend that needs no external server."""
    if request.param == "memory":
        return InMemoryRunRepository()
    return SQLiteRunRepository(tmp_path / "runs.db")
