"""Tests for table and pipeline status derivation."""

import pytest

from connector_control.models import TableObject, TableStatus, Task
from connector_control.status_reconciler import (
    derive_pipeline_status,
    derive_table_status,
    is_failed_state,
    project_tables,
    tasks_from_status,
)


def _tasks(*states):
    return [Task("orders-src", index, state) for index, state in enumerate(states)]


@pytest.mark.parametrize("states,expected", [
    (("RUNNING", "RUNNING"), TableStatus.STREAMING),
    (("RUNNING", "PAUSED"), TableStatus.PAUSED),
    (("RUNNING", "FAILED"), TableStatus.ERROR),
    (("PAUSED", "FAILED"), TableStatus.ERROR),
    (("RUNNING", "UNASSIGNED"), TableStatus.ERROR),
    (("running",), TableStatus.STREAMING),
])
def test_derive_table_status(states, expected):
    assert derive_table_status(_tasks(*states)) == expected


def test_no_tasks_keeps_previous_status():
    assert derive_table_status([], previous="streaming") == TableStatus.STREAMING
    assert derive_table_status([], previous=TableStatus.ERROR) == TableStatus.ERROR
    assert derive_table_status([]) == TableStatus.PAUSED


def test_failed_equivalent_states():
    assert is_failed_state("FAILED")
    assert is_failed_state("RESTARTING")
    assert is_failed_state(None)
    assert not is_failed_state("PAUSED")
    assert not is_failed_state("RUNNING")


def test_pipeline_status_spans_source_and_sink_tasks():
    tasks = [Task("orders-src", 0, "RUNNING"), Task("orders-sink", 0, "FAILED")]

    assert derive_pipeline_status(tasks) == TableStatus.ERROR


def test_project_tables_gives_every_table_the_same_status():
    tables = [TableObject("public", "orders"), TableObject("public", "customers", status="error")]

    projected = project_tables(tables, _tasks("RUNNING", "PAUSED"))

    assert [table.status for table in projected] == ["paused", "paused"]
    # Inputs are not modified
    assert [table.status for table in tables] == ["streaming", "error"]


def test_tasks_from_status_orders_by_task_number():
    payload = {
        "name": "orders-src",
        "connector": {"state": "RUNNING", "worker_id": "w1"},
        "tasks": [
            {"id": 1, "state": "FAILED", "worker_id": "w2"},
            {"id": 0, "state": "RUNNING", "worker_id": "w1"},
        ],
    }

    tasks = tasks_from_status(payload, "source")

    assert [task.id for task in tasks] == ["orders-src-0", "orders-src-1"]
    assert tasks[1].worker_id == "w2"
    assert tasks[0].connector_type == "source"
    assert tasks_from_status(None) == []
