"""Derivation of table and pipeline status from live connector tasks.

Tasks are not assigned to tables, so every table of a pipeline is associated
with all tasks of its source and sink connectors and shares one status.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

from connector_control.models import TableObject, TableStatus, Task, TaskState

StatusLike = Union[TableStatus, str]


def is_failed_state(state: Optional[str]) -> bool:
    """Any state other than RUNNING or PAUSED counts as failed."""
    return (state or "").upper() not in (TaskState.RUNNING.value, TaskState.PAUSED.value)


def derive_table_status(tasks: Iterable[Task], previous: Optional[StatusLike] = None) -> TableStatus:
    """Map a task set onto a single table status.

    Args:
        tasks: Current tasks of the pipeline's connectors
        previous: Last status shown for the table

    Returns:
        ``previous`` when there are no tasks (``paused`` if unknown),
        else ``error`` if any task failed, ``paused`` if any task is paused,
        ``streaming`` if all run, ``paused`` otherwise.
    """
    states = [(task.state or "").upper() for task in tasks]
    if not states:
        if previous is None:
            return TableStatus.PAUSED
        return TableStatus(previous)
    if any(is_failed_state(state) for state in states):
        return TableStatus.ERROR
    if any(state == TaskState.PAUSED.value for state in states):
        return TableStatus.PAUSED
    if all(state == TaskState.RUNNING.value for state in states):
        return TableStatus.STREAMING
    return TableStatus.PAUSED


def derive_pipeline_status(tasks: Iterable[Task], previous: Optional[StatusLike] = None) -> TableStatus:
    """Aggregate status over the union of source and sink tasks."""
    return derive_table_status(tasks, previous)


def project_tables(tables: Iterable[TableObject], tasks: List[Task]) -> List[TableObject]:
    """Return copies of ``tables`` with their status recomputed from ``tasks``."""
    return [
        table.copy(status=derive_table_status(tasks, table.status).value)
        for table in tables
    ]


def tasks_from_status(payload: Optional[Dict[str, Any]], connector_type: Optional[str] = None) -> List[Task]:
    """Convert a Kafka Connect status document into tasks.

    Args:
        payload: ``{name, connector: {state, worker_id}, tasks: [{id, state, worker_id}]}``
        connector_type: 'source' or 'sink', carried on each task

    Returns:
        Tasks ordered by task number; empty for a missing connector
    """
    if not payload:
        return []
    name = payload.get("name", "")
    tasks = []
    for index, raw in enumerate(payload.get("tasks") or []):
        try:
            task_number = int(raw.get("id", index))
        except (TypeError, ValueError):
            task_number = index
        tasks.append(
            Task(
                connector_name=name,
                task_number=task_number,
                state=raw.get("state", "UNASSIGNED"),
                worker_id=raw.get("worker_id"),
                connector_type=connector_type,
            )
        )
    return sorted(tasks, key=lambda t: t.task_number)
