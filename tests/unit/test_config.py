"""Tests for configuration loading."""

from antfarm.config import load_config
from antfarm.persistence import (
    InMemoryRunRepository,
    PostgresRunRepository,
    SQLiteRunRepository,
    get_repository,
)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "antfarm.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/antfarm-test.db
workflows_dir: /opt/workflows
log_level: INFO
"""
    )
    monkeypatch.setenv("ANTFARM_CONFIG", str(config_path))
    monkeypatch.delenv("ANTFARM_DATABASE_URL", raising=False)
    monkeypatch.delenv("ANTFARM_WORKFLOWS_DIR", raising=False)
    monkeypatch.delenv("ANTFARM_LOG_LEVEL", raising=False)

    config = load_config()
    assert config.database_url == "sqlite:///tmp/antfarm-test.db"
    assert config.workflows_dir == "/opt/workflows"
    assert config.log_level == "INFO"


def test_env_overrides_config_file(tmp_path, monkeypatch):
    config_path = tmp_path / "antfarm.yaml"
    config_path.write_text("workflows_dir: /from/file\n")
    monkeypatch.setenv("ANTFARM_CONFIG", str(config_path))
    monkeypatch.setenv("ANTFARM_WORKFLOWS_DIR", str(tmp_path / "wf"))
    monkeypatch.setenv("ANTFARM_DATABASE_URL", "memory://")

    config = load_config()
    assert config.workflows_path == tmp_path / "wf"
    assert config.database_url == "memory://"


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("ANTFARM_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("ANTFARM_DATABASE_URL", raising=False)
    monkeypatch.delenv("ANTFARM_WORKFLOWS_DIR", raising=False)

    config = load_config()
    assert config.database_url.startswith("sqlite://")
    assert config.workflows_dir.endswith("workflows")


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "antfarm.yaml"
    config_path.write_text(f"database_url: sqlite://{tmp_path / 'runs.db'}\n")
    monkeypatch.setenv("ANTFARM_CONFIG", str(config_path))
    monkeypatch.delenv("ANTFARM_DATABASE_URL", raising=False)

    repo = get_repository()
    assert isinstance(repo, SQLiteRunRepository)
    assert repo.db_path == str(tmp_path / "runs.db")
    assert get_repository() is repo


def test_get_repository_memory_url():
    assert isinstance(get_repository("memory://"), InMemoryRunRepository)


def test_get_repository_postgres_url():
    repo = get_repository("postgresql://user:pw@localhost:5432/antfarm")
    assert isinstance(repo, PostgresRunRepository)
