from __future__ import annotations

import types

import pytest
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from scripts import run_migrations as runner


def _load_test_config(monkeypatch) -> Config:
    monkeypatch.setenv("STUDY_PLANNER_DATABASE_URL", "sqlite://")
    config = Config()
    config.set_main_option("sqlalchemy.url", "")
    config.set_main_option("script_location", str(runner.BACKEND_ROOT / "alembic"))
    return config


def test_resolve_database_url_prefers_env(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)
    assert runner.resolve_database_url(config) == "sqlite://"
    assert config.get_main_option("sqlalchemy.url") == "sqlite://"


def test_resolve_database_url_requires_a_value(monkeypatch) -> None:
    monkeypatch.delenv("STUDY_PLANNER_DATABASE_URL", raising=False)
    config = Config()
    with pytest.raises(RuntimeError):
        runner.resolve_database_url(config)


def test_resolve_database_url_keeps_explicit_url() -> None:
    config = Config()
    config.set_main_option("sqlalchemy.url", "sqlite:///planner.db")
    assert runner.resolve_database_url(config) == "sqlite:///planner.db"


def test_wait_for_database_succeeds_with_sqlite(tmp_path) -> None:
    db_path = tmp_path / "test.sqlite"
    url = f"sqlite:///{db_path}"
    runner.wait_for_database(url, timeout=2, poll_interval=0.1)


def test_wait_for_database_times_out(monkeypatch) -> None:
    class DummyEngine:
        def connect(self) -> types.SimpleNamespace:
            raise runner.OperationalError("SELECT 1", {}, Exception("boom"))

        def dispose(self) -> None:
            pass

    monkeypatch.setattr(runner, "create_engine", lambda *_, **__: DummyEngine())
    with pytest.raises(RuntimeError):
        runner.wait_for_database("postgresql://example", timeout=0, poll_interval=0)


def test_run_migrations_invokes_upgrade(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)

    recorded: dict[str, object] = {}

    def fake_wait(url: str, *, timeout: int, poll_interval: float) -> None:
        recorded["wait"] = (url, timeout, poll_interval)

    def fake_upgrade(cfg, revision: str) -> None:
        recorded["revision"] = revision
        recorded["config_script_location"] = cfg.get_main_option("script_location")

    monkeypatch.setattr(runner, "wait_for_database", fake_wait)
    monkeypatch.setattr(runner.command, "upgrade", fake_upgrade)
    monkeypatch.setattr(runner, "verify_planner_schema", lambda url: recorded.setdefault("verified", url))

    runner.run_migrations("head", timeout=5, poll_interval=0.1, config=config)

    assert recorded["revision"] == "head"
    assert recorded["wait"][0].startswith("sqlite://")
    assert recorded["config_script_location"].endswith("alembic")
    assert recorded["verified"] == "sqlite://"


def test_partial_upgrade_skips_schema_verification(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)
    monkeypatch.setattr(runner, "wait_for_database", lambda *_, **__: None)
    monkeypatch.setattr(runner.command, "upgrade", lambda cfg, revision: None)

    def fail(url: str) -> None:
        raise AssertionError("schema should only be verified at head")

    monkeypatch.setattr(runner, "verify_planner_schema", fail)

    runner.run_migrations("20250106_01_planner_schema", timeout=1, poll_interval=0.1, config=config)


def test_verify_planner_schema_rejects_an_empty_database(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'empty.sqlite'}"
    with pytest.raises(RuntimeError, match="planner_users"):
        runner.verify_planner_schema(url)


def test_main_reports_failure_when_schema_is_incomplete(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'planner.sqlite'}"
    monkeypatch.setenv("STUDY_PLANNER_DATABASE_URL", url)
    monkeypatch.setattr(runner.command, "upgrade", lambda cfg, revision: None)

    assert runner.main(["--timeout", "1", "--poll-interval", "0.1"]) == 1


def test_migrations_create_planner_schema(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'planner.sqlite'}"
    monkeypatch.setenv("STUDY_PLANNER_DATABASE_URL", url)
    config = runner.get_alembic_config(str(runner.BACKEND_ROOT / "alembic.ini"))

    runner.run_migrations("head", timeout=2, poll_interval=0.1, config=config)

    engine = create_engine(url, future=True)
    try:
        tables = set(inspect(engine).get_table_names())
        session_columns = {column["name"] for column in inspect(engine).get_columns("study_sessions")}
    finally:
        engine.dispose()
    assert {
        "planner_users",
        "topic_ratings",
        "blocked_times",
        "recurring_commitments",
        "study_sessions",
        "persistence_audit_events",
    } <= tables
    assert {"rerating_score", "completed_at"} <= session_columns
