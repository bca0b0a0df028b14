import json
from datetime import date, datetime, timedelta

import pytest

from jobs import stages
from jobs.__main__ import main
from jobs.config import PipelineSettings, load_settings
from jobs.stages import ensure_fresh, get_stage, local_date, run_pipeline, run_stage
from pipelines.geo import AUSTIN_MSA, GeoReferenceSet
from storage.db import connect
from storage.repositories import HistoryRepository, LoadStatusRepository

NOW = datetime(2024, 7, 1, 12, 0)
SETTINGS = PipelineSettings(reference=GeoReferenceSet.from_zips("test", ["78704"]))

ENV_NAMES = (
    "PULSE_ZIPS",
    "PULSE_REGION_NAME",
    "MORTGAGE_RATE",
    "LOAN_TERM_YEARS",
    "SCHEDULE_METRICS",
    "PULSE_TIMEZONE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "jobs.duckdb")
    try:
        yield connection
    finally:
        connection.close()


def test_load_settings_defaults_to_austin_msa():
    settings = load_settings()

    assert settings.reference == AUSTIN_MSA
    assert settings.finance.mortgage_rate == pytest.approx(0.0689)
    assert settings.schedule_for("metrics") == "0 5 * * *"
    assert settings.timezone == "America/Chicago"


def test_load_settings_reads_environment_overrides(monkeypatch):
    monkeypatch.setenv("PULSE_ZIPS", "78704, 8701")
    monkeypatch.setenv("PULSE_REGION_NAME", "pilot")
    monkeypatch.setenv("MORTGAGE_RATE", "0.055")
    monkeypatch.setenv("SCHEDULE_METRICS", "15 7 * * *")

    settings = load_settings()

    assert settings.reference.name == "pilot"
    assert settings.reference.zips == ("08701", "78704")
    assert settings.finance.mortgage_rate == pytest.approx(0.055)
    assert settings.finance.loan_term_years == 30
    assert settings.schedule_for("metrics") == "15 7 * * *"


def test_load_settings_names_the_invalid_variable(monkeypatch):
    monkeypatch.setenv("LOAN_TERM_YEARS", "thirty")

    with pytest.raises(ValueError, match="LOAN_TERM_YEARS"):
        load_settings()


def test_local_date_uses_configured_timezone():
    late_evening_utc = datetime(2024, 7, 2, 3, 0)

    assert local_date(late_evening_utc, "America/Chicago") == date(2024, 7, 1)
    assert local_date(late_evening_utc, "UTC") == date(2024, 7, 2)


def test_get_stage_rejects_unknown_names():
    assert get_stage("history").name == "history"
    with pytest.raises(ValueError, match="Unknown stage"):
        get_stage("rentals")


def test_run_stage_records_load_status(conn):
    summary = run_stage("history", settings=SETTINGS, conn=conn, now=NOW)

    assert summary == {"snapshotsCreated": 1, "errors": []}
    status = LoadStatusRepository(conn).get("history")
    assert status.loaded_at == NOW
    assert (status.row_count, status.error_count) == (1, 0)


def test_run_stage_turns_exceptions_into_fatal_errors(conn, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(stages, "refresh_metrics", explode)

    summary = run_stage("metrics", settings=SETTINGS, conn=conn, now=NOW)

    assert summary == {"errors": ["Fatal: boom"]}
    status = LoadStatusRepository(conn).get("metrics")
    assert (status.row_count, status.error_count) == (0, 1)


def test_run_pipeline_runs_requested_stages_in_order(conn):
    results = run_pipeline(settings=SETTINGS, conn=conn, now=NOW, stages=("metrics", "history"))

    assert list(results) == ["metrics", "history"]
    assert results["metrics"] == {"rowsProcessed": 0, "errors": []}
    assert results["history"]["snapshotsCreated"] == 1


def test_ensure_fresh_recomputes_only_when_stale(conn):
    first = ensure_fresh(settings=SETTINGS, conn=conn, now=NOW)

    assert set(first) == {"metrics", "history"}
    assert HistoryRepository(conn).latest_date() == date(2024, 7, 1)
    assert ensure_fresh(settings=SETTINGS, conn=conn, now=NOW + timedelta(hours=2)) is None

    stale = ensure_fresh(settings=SETTINGS, conn=conn, now=NOW + timedelta(hours=25))

    assert stale["history"]["snapshotsCreated"] == 1
    assert HistoryRepository(conn).latest_date() == date(2024, 7, 2)


def test_failed_history_run_does_not_make_old_snapshot_fresh(conn, monkeypatch):
    run_stage("history", settings=SETTINGS, conn=conn, now=NOW)
    failed_at = datetime(2024, 7, 10, 12, 0)

    def explode(*args, **kwargs):
        raise RuntimeError("db down")

    with monkeypatch.context() as patched:
        patched.setattr(stages, "create_daily_snapshot", explode)
        summary = run_stage("history", settings=SETTINGS, conn=conn, now=failed_at)
    assert summary == {"errors": ["Fatal: db down"]}

    results = ensure_fresh(settings=SETTINGS, conn=conn, now=failed_at + timedelta(hours=1))

    assert results["history"] == {"snapshotsCreated": 1, "errors": []}
    assert HistoryRepository(conn).latest_date() == date(2024, 7, 10)


def test_cli_lists_stages_and_zips(monkeypatch, capsys):
    monkeypatch.setenv("PULSE_ZIPS", "78704,78745")
    monkeypatch.setenv("PULSE_REGION_NAME", "pilot")

    assert main(["list-zips"]) == 0
    assert capsys.readouterr().out.splitlines() == ["pilot: 2 zips", "78704", "78745"]

    assert main(["list-stages"]) == 0
    out = capsys.readouterr().out
    assert "metrics: cron='0 5 * * *' tz=America/Chicago" in out
    assert out.count("\n") == len(stages.STAGES)


def test_cli_run_prints_stage_results(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("MARKET_PULSE_DB_PATH", str(tmp_path / "cli.duckdb"))
    monkeypatch.setenv("PULSE_ZIPS", "78704")

    assert main(["run", "history"]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert printed == {"history": {"snapshotsCreated": 1, "errors": []}}
