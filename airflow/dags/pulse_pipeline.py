from __future__ import annotations

import os
from datetime import datetime, timedelta
from textwrap import dedent

import pendulum
from airflow import DAG
from airflow.providers.docker.operators.docker import DockerOperator
from docker.types import Mount

from jobs.config import load_settings
from jobs.stages import STAGES
from storage.db import (
    DEMOGRAPHIC_TABLE,
    DERIVED_METRICS_TABLE,
    HISTORY_TABLE,
    MARKET_ACTIVITY_TABLE,
    VALUE_INDEX_TABLE,
)

DEFAULT_ARGS = {
    "owner": "data-platform",
    "depends_on_past": False,
    "email_on_failure": False,
    "email_on_retry": False,
    "retries": 1,
    "retry_delay": timedelta(minutes=10),
}

COMPOSE_PROJECT = os.environ.get("COMPOSE_PROJECT_NAME", "market-pulse")
DOCKER_NETWORK = f"{COMPOSE_PROJECT}_default"
API_IMAGE = os.environ.get("API_IMAGE", "market-pulse-api:latest")
DATA_MOUNT = Mount(target="/app/data", source="market_pulse_data", type="volume")

ENV_KEYS = [
    "CENSUS_API_KEY",
    "CENSUS_YEAR",
    "PULSE_ZIPS",
    "PULSE_REGION_NAME",
    "PULSE_TIMEZONE",
    "MORTGAGE_RATE",
    "LOAN_TERM_YEARS",
    "DOWN_PAYMENT_PCT",
    "EXPENSE_RATIO",
    "AFFORDABILITY_RATIO",
    "VALUE_INDEX_WINDOW_YEARS",
    "MARKET_ACTIVITY_WINDOW_YEARS",
    "LOG_LEVEL",
]

ENVIRONMENT = {key: value for key in ENV_KEYS if (value := os.environ.get(key))}

STAGE_TABLES = {
    "value_index": VALUE_INDEX_TABLE,
    "demographics": DEMOGRAPHIC_TABLE,
    "market_activity": MARKET_ACTIVITY_TABLE,
    "metrics": DERIVED_METRICS_TABLE,
    "history": HISTORY_TABLE,
}

QUALITY_CHECK_SCRIPT = dedent(
    """
from storage.db import connect

conn = connect(read_only=True)
rows = conn.execute("SELECT COUNT(*) FROM {table}").fetchone()[0]
status = conn.execute(
    "SELECT error_count FROM load_status WHERE status_key = ?", ["{stage}"]
).fetchone()
conn.close()

assert rows > 0, "No rows in {table}"
assert status is not None, "Stage {stage} did not record its status"
print({{"table": "{table}", "rows": rows, "errors": status[0]}})
    """
).strip()

SETTINGS = load_settings()
TIMEZONE = pendulum.timezone(SETTINGS.timezone)


def _docker_task(task_id: str, command: list[str]) -> DockerOperator:
    return DockerOperator(
        task_id=task_id,
        image=API_IMAGE,
        command=command,
        docker_url="unix://var/run/docker.sock",
        auto_remove=True,
        network_mode=DOCKER_NETWORK,
        environment=ENVIRONMENT,
        mounts=[DATA_MOUNT],
        mount_tmp_dir=False,
        do_xcom_push=False,
    )


for stage in STAGES:
    with DAG(
        dag_id=f"pulse_{stage.name}",
        description=stage.description,
        schedule=stage.cron(SETTINGS),
        start_date=datetime(2024, 1, 1, tzinfo=TIMEZONE),
        catchup=False,
        default_args=DEFAULT_ARGS,
        max_active_runs=1,
        tags=["market-pulse", "etl"],
    ) as dag:
        run = _docker_task(f"run_{stage.name}", ["python", "-m", "jobs", "run", stage.name])
        check = _docker_task(
            "data_quality_checks",
            [
                "python",
                "-c",
                QUALITY_CHECK_SCRIPT.format(table=STAGE_TABLES[stage.name], stage=stage.name),
            ],
        )
        run >> check

    globals()[dag.dag_id] = dag

with DAG(
    dag_id="pulse_ensure_fresh",
    description="Recompute metrics and history when the latest snapshot is stale",
    schedule="@hourly",
    start_date=datetime(2024, 1, 1, tzinfo=TIMEZONE),
    catchup=False,
    default_args=DEFAULT_ARGS,
    max_active_runs=1,
    tags=["market-pulse", "maintenance"],
) as ensure_fresh_dag:
    _docker_task("ensure_fresh", ["python", "-m", "jobs", "ensure-fresh"])
