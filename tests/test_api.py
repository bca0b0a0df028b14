import csv
import io
import tempfile
from datetime import date

import duckdb
import pytest
from fastapi.testclient import TestClient

from api.main import app
from pipelines.geo import AUSTIN_MSA
from pipelines.model import DerivedMetricRecord, HistorySnapshot
from storage.db import connect
from storage.repositories import DerivedMetricsRepository, HistoryRepository


@pytest.fixture()
def populated_db(monkeypatch, tmp_path):
    db_path = tmp_path / "pulse.duckdb"
    monkeypatch.setenv("MARKET_PULSE_DB_PATH", str(db_path))
    monkeypatch.delenv("PULSE_ZIPS", raising=False)

    conn = connect()
    try:
        DerivedMetricsRepository(conn).upsert(
            [
                DerivedMetricRecord(zip="78704", date=date(2024, 6, 30), investor_score=40),
                DerivedMetricRecord(zip="78704", date=date(2024, 7, 1), investor_score=45),
                DerivedMetricRecord(zip="78745", date=date(2024, 6, 30), investor_score=60),
            ]
        )
        HistoryRepository(conn).upsert(
            [
                HistorySnapshot(
                    zip=zip_code,
                    date=on,
                    median_home_value=500_000,
                    market_temperature="Balanced",
                    market_score=50,
                )
                for zip_code in ("78704", "78745")
                for on in (date(2024, 6, 29), date(2024, 6, 30), date(2024, 7, 1))
            ]
        )
    finally:
        conn.close()

    yield db_path


@pytest.fixture()
def client(populated_db):
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_zips_lists_reference_set(client):
    payload = client.get("/zips").json()

    assert payload["count"] == len(AUSTIN_MSA)
    assert payload["zips"] == list(AUSTIN_MSA)


def test_metrics_defaults_to_latest_date_per_zip(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    payload = response.json()
    assert payload["count"] == 2
    latest = {item["zip"]: (item["date"], item["investor_score"]) for item in payload["items"]}
    assert latest == {"78704": ("2024-07-01", 45), "78745": ("2024-06-30", 60)}


def test_metrics_filters_by_zip_and_date(client):
    response = client.get("/metrics", params={"zip": "78704", "date": "2024-06-30"})

    items = response.json()["items"]
    assert [(item["zip"], item["investor_score"]) for item in items] == [("78704", 40)]


def test_unknown_zip_is_not_found(client):
    response = client.get("/metrics", params={"zip": "10001"})

    assert response.status_code == 404


def test_unsupported_format_is_rejected(client):
    response = client.get("/history", params={"format": "xml"})

    assert response.status_code == 400


def test_history_date_range_and_limit(client):
    response = client.get(
        "/history", params={"zip": "78745", "start": "2024-06-30", "end": "2024-07-01"}
    )

    dates = [item["date"] for item in response.json()["items"]]
    assert dates == ["2024-06-30", "2024-07-01"]

    limited = client.get("/history", params={"limit": 2}).json()
    assert limited["count"] == 2

    inverted = client.get("/history", params={"start": "2024-07-01", "end": "2024-06-01"})
    assert inverted.status_code == 400


def test_history_csv(client):
    response = client.get("/history", params={"format": "csv", "zip": "78704"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(response.content.decode())))
    assert len(rows) == 3
    assert {row["zip"] for row in rows} == {"78704"}
    assert rows[0]["market_temperature"] == "Balanced"


def test_metrics_parquet(client):
    response = client.get("/metrics", params={"format": "parquet"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.apache.parquet")

    with tempfile.NamedTemporaryFile(suffix=".parquet") as tmp:
        tmp.write(response.content)
        tmp.flush()
        con = duckdb.connect()
        try:
            count = con.execute("SELECT COUNT(*) FROM read_parquet(?)", [tmp.name]).fetchone()[0]
        finally:
            con.close()
    assert count == 2
