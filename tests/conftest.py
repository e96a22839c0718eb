"""Shared fixtures: SQLite database, virtual clock and fake Kafka Connect."""

import heapq
import itertools
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests
from sqlalchemy.orm import sessionmaker

from connector_control.database.session import build_engine, init_db
from connector_control.kafka_connect_client import KafkaConnectError
from connector_control.models import ConnectorType
from connector_control.registry import VersionStore
from connector_control.repository import PipelineRepository
from connector_control.scheduler import Clock, ScheduledTaskRegistry

POSTGRES_SOURCE_CLASS = "io.debezium.connector.postgresql.PostgresConnector"
JDBC_SINK_CLASS = "io.debezium.connector.jdbc.JdbcSinkConnector"


class _VirtualTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class VirtualClock(Clock):
    """Clock whose time only moves when a test calls ``advance``."""

    def __init__(self):
        self._now = 0.0
        self._timers = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _VirtualTimer:
        timer = _VirtualTimer(self._now + delay, callback)
        heapq.heappush(self._timers, (timer.when, next(self._counter), timer))
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order (including ones they arm)."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = when
            timer.callback()
        self._now = target

    def armed(self) -> int:
        return sum(1 for _, _, timer in self._timers if not timer.cancelled)


class FakeKafkaConnect:
    """In-memory stand-in for the Kafka Connect REST client.

    Commands take effect ``propagation_delay`` seconds after they are issued
    (strictly later), like a real cluster acknowledging before the tasks move.
    """

    def __init__(self, clock: Optional[VirtualClock] = None):
        self.clock = clock or VirtualClock()
        self.connectors: Dict[str, Dict[str, Any]] = {}
        self.configs: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.status_polls: Dict[str, List[float]] = {}
        self.rejections: Dict[str, str] = {}
        self.fail_status = False
        self.propagation_delay = 0.0
        self._transitions: List[tuple] = []

    def add_connector(self, name: str, tasks=("RUNNING",), state: str = "RUNNING", worker_id: str = "connect-1:8083"):
        self.connectors[name] = {"state": state, "tasks": list(tasks), "worker_id": worker_id}

    def set_state(self, name: str, state: str, tasks=None):
        connector = self.connectors[name]
        connector["state"] = state
        connector["tasks"] = list(tasks) if tasks is not None else [state for _ in connector["tasks"]]

    def _apply_due_transitions(self):
        now = self.clock.now()
        remaining = []
        for at, name, state, task_number in self._transitions:
            if now > at or (self.propagation_delay == 0 and now >= at):
                if task_number is None:
                    self.set_state(name, state)
                else:
                    self.connectors[name]["tasks"][task_number] = state
            else:
                remaining.append((at, name, state, task_number))
        self._transitions = remaining

    def _command(self, method: str, name: str, state: Optional[str] = None, task_number: Optional[int] = None):
        self.calls.append((method, name) if task_number is None else (method, name, task_number))
        if method in self.rejections:
            raise KafkaConnectError(self.rejections[method], status_code=409)
        if name not in self.connectors:
            raise KafkaConnectError(f"Connector {name} not found", status_code=404)
        if state is not None:
            self._transitions.append((self.clock.now() + self.propagation_delay, name, state, task_number))

    def get_connector_status(self, name: str) -> Optional[Dict[str, Any]]:
        self.status_polls.setdefault(name, []).append(self.clock.now())
        if self.fail_status:
            raise requests.exceptions.ConnectionError("Connection refused")
        self._apply_due_transitions()
        connector = self.connectors.get(name)
        if connector is None:
            return None
        return {
            "name": name,
            "connector": {"state": connector["state"], "worker_id": connector["worker_id"]},
            "tasks": [
                {"id": index, "state": state, "worker_id": connector["worker_id"]}
                for index, state in enumerate(connector["tasks"])
            ],
            "type": "source",
        }

    def pause_connector(self, name: str) -> None:
        self._command("pause_connector", name, "PAUSED")

    def resume_connector(self, name: str) -> None:
        self._command("resume_connector", name, "RUNNING")

    def restart_task(self, name: str, task_number: int) -> None:
        self._command("restart_task", name, "RUNNING", task_number)

    def restart_connector(self, name: str, include_tasks: bool = False, only_failed: bool = False) -> Dict[str, Any]:
        self._command("restart_connector", name, "RUNNING")
        return {}

    def update_connector(self, name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update_connector", name))
        if "update_connector" in self.rejections:
            raise KafkaConnectError(self.rejections["update_connector"], status_code=400)
        self.configs[name] = dict(config)
        return {"name": name, "config": config}


class FakeResponse:
    """Minimal ``requests.Response`` replacement for client tests."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None, reason: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.reason = reason
        if text is not None:
            self.text = text
        elif payload is not None:
            self.text = json.dumps(payload)
        else:
            self.text = ""
        self.content = self.text.encode("utf-8")

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'connector_control.db'}")
    init_db(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repository(db):
    return PipelineRepository(db)


@pytest.fixture
def registry(session_factory):
    return VersionStore(session_factory)


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def scheduler(clock):
    return ScheduledTaskRegistry(clock)


@pytest.fixture
def kafka(clock):
    fake = FakeKafkaConnect(clock)
    fake.add_connector("orders-src", tasks=["RUNNING", "RUNNING"])
    fake.add_connector("orders-sink", tasks=["RUNNING"])
    return fake


@pytest.fixture
def source_config():
    return {
        "connector.class": POSTGRES_SOURCE_CLASS,
        "database.hostname": "pg.internal",
        "database.port": "5432",
        "database.user": "cdc",
        "database.password": "s3cr3t",
        "database.dbname": "shop",
        "topic.prefix": "shop",
        "table.include.list": "public.orders,public.customers",
        "tasks.max": "1",
    }


@pytest.fixture
def sink_config():
    return {
        "connector.class": JDBC_SINK_CLASS,
        "connection.url": "jdbc:postgresql://dwh:5432/analytics",
        "connection.password": "dwh-pass",
        "topics": "shop.public.orders,shop.public.customers",
        "insert.mode": "upsert",
        "primary.key.mode": "record_key",
        "tasks.max": "1",
    }


@pytest.fixture
def pipeline(repository, source_config, sink_config):
    """Pipeline with an inline source and sink connector."""
    created = repository.create_pipeline("orders", source_type="postgresql", destination_type="postgresql")
    repository.add_connector(
        created.id, "orders-src", ConnectorType.SOURCE,
        connector_class=source_config["connector.class"], config=source_config,
    )
    repository.add_connector(
        created.id, "orders-sink", ConnectorType.SINK,
        connector_class=sink_config["connector.class"], config=sink_config,
    )
    return repository.get_pipeline(created.id)
