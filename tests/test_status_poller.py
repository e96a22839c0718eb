"""Tests for status polling and the versioned pipeline view."""

import pytest

from connector_control.models import TableObject, TableStatus, Task
from connector_control.status_poller import STATUS_CONCERN, RuntimeStatusPoller
from connector_control.view_model import VersionedView


@pytest.fixture
def poller(kafka, scheduler):
    return RuntimeStatusPoller(kafka, scheduler, interval=60)


@pytest.fixture
def tables():
    return [TableObject("public", "orders"), TableObject("public", "customers")]


def test_view_discards_out_of_order_responses():
    view = VersionedView("p1")
    older = view.begin_refresh()
    newer = view.begin_refresh()

    assert view.apply(newer, [Task("orders-src", 0, "PAUSED")])
    assert not view.apply(older, [Task("orders-src", 0, "RUNNING")])

    assert view.pipeline_status == TableStatus.PAUSED
    assert view.sequence == newer


def test_loading_tracks_only_explicit_refreshes():
    view = VersionedView("p1")
    silent = view.begin_refresh()
    assert not view.loading

    explicit = view.begin_refresh(explicit=True)
    assert view.loading
    view.finish_refresh(silent)
    assert view.loading
    view.finish_refresh(explicit)
    assert not view.loading


async def test_refresh_projects_tasks_onto_tables(poller, kafka, tables):
    kafka.set_state("orders-sink", "RUNNING", tasks=["FAILED"])
    view = poller.register("p1", "orders-src", "orders-sink", tables)

    assert await poller.refresh("p1", explicit=True)

    assert [task.id for task in view.tasks] == ["orders-src-0", "orders-src-1", "orders-sink-0"]
    assert view.pipeline_status == TableStatus.ERROR
    assert [table.status for table in view.tables] == ["error", "error"]
    assert view.connector_states == {"orders-src": "RUNNING", "orders-sink": "RUNNING"}
    assert not view.loading


async def test_failed_poll_keeps_last_known_tasks(poller, kafka, tables):
    view = poller.register("p1", "orders-src", "orders-sink", tables)
    await poller.refresh("p1")
    kafka.fail_status = True

    assert not await poller.refresh("p1", explicit=True)

    assert len(view.tasks) == 3
    assert view.pipeline_status == TableStatus.STREAMING
    assert view.stale
    assert "Connection refused" in view.last_error
    assert not view.loading

    kafka.fail_status = False
    await poller.refresh("p1")
    assert not view.stale
    assert view.last_error is None


async def test_missing_connector_yields_no_tasks_and_keeps_status(poller, kafka, tables):
    view = poller.register("p1", "orders-src", "orders-sink", tables)
    await poller.refresh("p1")
    del kafka.connectors["orders-src"]
    del kafka.connectors["orders-sink"]

    await poller.refresh("p1")

    assert view.tasks == []
    assert view.pipeline_status == TableStatus.STREAMING
    assert view.connector_states == {"orders-src": None, "orders-sink": None}


async def test_refresh_of_unregistered_pipeline_is_ignored(poller, kafka):
    assert not await poller.refresh("nope")
    assert kafka.status_polls == {}


async def test_periodic_polling_runs_silently(poller, kafka, scheduler, clock, tables):
    view = poller.register("p1", "orders-src", "orders-sink", tables)
    poller.start("p1")
    await scheduler.drain()
    clock.advance(60)
    await scheduler.drain()

    assert kafka.status_polls["orders-src"] == [0.0, 60.0]
    assert view.refresh_count == 2
    assert not view.loading
    assert scheduler.is_active(STATUS_CONCERN, "p1")


async def test_unregister_stops_polling(poller, kafka, scheduler, clock):
    poller.register("p1", "orders-src", "orders-sink")
    poller.start("p1", run_immediately=False)

    poller.unregister("p1")
    clock.advance(600)
    await scheduler.drain()

    assert kafka.status_polls == {}
    assert poller.view("p1") is None


def test_start_requires_registration(poller):
    with pytest.raises(KeyError):
        poller.start("p1")
