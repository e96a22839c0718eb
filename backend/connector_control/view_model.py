"""Sequence-numbered view of a pipeline's observed runtime status."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from connector_control.models import TableObject, TableStatus, Task, utcnow
from connector_control.status_reconciler import derive_pipeline_status, project_tables

logger = logging.getLogger(__name__)


class VersionedView:
    """Latest task set, derived statuses and refresh bookkeeping of one pipeline.

    Every refresh takes a sequence number from ``begin_refresh``; a response
    whose number is not newer than the last applied one is dropped, so a
    slow response cannot overwrite a newer view. Only explicit refreshes
    drive the ``loading`` flag.
    """

    def __init__(self, pipeline_id: str, tables: Optional[List[TableObject]] = None):
        self.pipeline_id = pipeline_id
        self.tasks: List[Task] = []
        self.connector_states: Dict[str, Optional[str]] = {}
        self.tables: List[TableObject] = list(tables or [])
        self.pipeline_status: Optional[TableStatus] = None
        self.last_error: Optional[str] = None
        self.stale = False
        self.loading = False
        self.updated_at: Optional[datetime] = None
        self.refresh_count = 0
        self._issued = 0
        self._applied = 0
        self._explicit_in_flight: Set[int] = set()

    @property
    def sequence(self) -> int:
        """Sequence number of the last applied response."""
        return self._applied

    def begin_refresh(self, explicit: bool = False) -> int:
        self._issued += 1
        if explicit:
            self._explicit_in_flight.add(self._issued)
            self.loading = True
        return self._issued

    def finish_refresh(self, sequence: int) -> None:
        self._explicit_in_flight.discard(sequence)
        self.loading = bool(self._explicit_in_flight)

    def apply(
        self,
        sequence: int,
        tasks: List[Task],
        connector_states: Optional[Dict[str, Optional[str]]] = None
    ) -> bool:
        """Apply a successful poll result.

        Returns:
            False if the result was older than the current view and dropped
        """
        if sequence <= self._applied:
            logger.debug(
                f"Discarding stale status response #{sequence} for pipeline {self.pipeline_id} "
                f"(current #{self._applied})"
            )
            return False
        self._applied = sequence
        self.tasks = list(tasks)
        if connector_states is not None:
            self.connector_states = dict(connector_states)
        self.tables = project_tables(self.tables, self.tasks)
        self.pipeline_status = derive_pipeline_status(self.tasks, self.pipeline_status)
        self.last_error = None
        self.stale = False
        self.updated_at = utcnow()
        self.refresh_count += 1
        return True

    def fail(self, sequence: int, error: str) -> bool:
        """Record a failed poll; the last known tasks stay in place."""
        if sequence <= self._applied:
            return False
        self.last_error = error
        self.stale = True
        return True

    def set_tables(self, tables: List[TableObject]) -> None:
        """Replace the table list, deriving status from the current tasks."""
        self.tables = project_tables(tables, self.tasks)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "pipeline_status": self.pipeline_status.value if self.pipeline_status else None,
            "connector_states": dict(self.connector_states),
            "tasks": [task.to_dict() for task in self.tasks],
            "tables": [table.to_dict() for table in self.tables],
            "stale": self.stale,
            "last_error": self.last_error,
            "sequence": self._applied,
            "loading": self.loading,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
