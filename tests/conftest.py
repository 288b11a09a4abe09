import pytest

import antfarm.persistence as persistence
from antfarm.config import AntfarmConfig
from antfarm.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRunRepository()
    else:
        repo = SQLiteRunRepository(tmp_path / "antfarm.db")
        yield repo
        repo.close()


@pytest.fixture
def workflows_dir(tmp_path):
    path = tmp_path / "workflows"
    path.mkdir()
    return path


@pytest.fixture
def config(workflows_dir):
    return AntfarmConfig(database_url="memory://", workflows_dir=str(workflows_dir))


@pytest.fixture(autouse=True)
def _reset_repository_singleton():
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None
