"""Tests for connector commands and the burst refresh that follows them."""

import pytest

from connector_control.burst_refresher import BURST_CONCERN, MutationBurstRefresher
from connector_control.commands import ConnectorCommandService
from connector_control.exceptions import CommandRejected, ConnectorControlError, ValidationError
from connector_control.models import TableStatus
from connector_control.pending_changes import PendingChangeManager
from connector_control.status_poller import RuntimeStatusPoller


@pytest.fixture
def poller(kafka, scheduler):
    return RuntimeStatusPoller(kafka, scheduler, interval=60)


@pytest.fixture
def burst(poller, scheduler):
    return MutationBurstRefresher(poller, scheduler, delays=[1.0, 2.0, 3.0])


@pytest.fixture
def service(kafka, burst):
    return ConnectorCommandService(kafka, burst)


@pytest.fixture
def view(poller):
    return poller.register("p1", "orders-src", "orders-sink")


async def _observe(clock, scheduler, view, steps=3):
    observed = []
    for _ in range(steps):
        clock.advance(1.0)
        await scheduler.drain()
        observed.append((clock.now(), view.pipeline_status))
    return observed


async def test_pause_is_first_observed_by_the_last_burst_refresh(service, kafka, scheduler, clock, view):
    # Tasks move two seconds after the pause is accepted
    kafka.propagation_delay = 2.0

    await service.pause_connector("p1", "orders-src")

    assert kafka.calls == [("pause_connector", "orders-src")]
    assert view.pipeline_status == TableStatus.STREAMING
    assert not view.loading
    assert await _observe(clock, scheduler, view) == [
        (1.0, TableStatus.STREAMING),
        (2.0, TableStatus.STREAMING),
        (3.0, TableStatus.PAUSED),
    ]
    assert kafka.status_polls["orders-src"] == [0.0, 1.0, 2.0, 3.0]
    assert scheduler.pending_timers("p1") == 0


async def test_immediate_refresh_sees_fast_transitions(service, kafka, view):
    kafka.set_state("orders-src", "PAUSED")

    await service.resume_connector("p1", "orders-src")

    assert view.pipeline_status == TableStatus.STREAMING


async def test_rejected_command_still_refreshes(service, kafka, scheduler, clock, view):
    kafka.rejections["pause_connector"] = "Cannot pause connector in FAILED state"

    with pytest.raises(CommandRejected) as exc_info:
        await service.pause_connector("p1", "orders-src")

    assert str(exc_info.value) == "Cannot pause connector in FAILED state"
    assert exc_info.value.details["status_code"] == 409
    assert kafka.status_polls["orders-src"] == [0.0]
    await _observe(clock, scheduler, view)
    assert kafka.status_polls["orders-src"] == [0.0, 1.0, 2.0, 3.0]


async def test_invalid_input_makes_no_calls(service, kafka):
    with pytest.raises(ValidationError):
        await service.pause_connector("p1", "")
    with pytest.raises(ValidationError):
        await service.restart_task("p1", "orders-src", -1)
    with pytest.raises(ValidationError):
        await service.restart_task("p1", "orders-src", True)

    assert kafka.calls == []
    assert kafka.status_polls == {}


async def test_restart_task_targets_one_task(service, kafka, view):
    kafka.set_state("orders-src", "RUNNING", tasks=["RUNNING", "FAILED"])

    await service.restart_task("p1", "orders-src", 1)

    assert kafka.calls == [("restart_task", "orders-src", 1)]
    assert view.pipeline_status == TableStatus.STREAMING


async def test_new_burst_replaces_pending_one(service, kafka, scheduler, clock, view):
    await service.pause_connector("p1", "orders-src")
    clock.advance(1.5)
    await scheduler.drain()

    await service.resume_connector("p1", "orders-src")

    # Remaining timers belong to the second burst only
    assert scheduler.pending_timers("p1") == 3
    assert kafka.status_polls["orders-src"] == [0.0, 1.5, 1.5]
    for _ in range(3):
        clock.advance(1.0)
        await scheduler.drain()
    assert kafka.status_polls["orders-src"] == [0.0, 1.5, 1.5, 2.5, 3.5, 4.5]


async def test_burst_without_view_is_skipped(burst, scheduler):
    assert not await burst.burst("unknown")
    assert not scheduler.is_active(BURST_CONCERN, "unknown")


async def test_deploy_pending_pushes_config_and_bursts(kafka, burst, repository, registry, pipeline, source_config, view):
    manager = PendingChangeManager(repository, registry)
    service = ConnectorCommandService(kafka, burst, manager)
    source_id = pipeline.source_connector.id
    manager.stage_change(source_id, dict(source_config, **{"tasks.max": "2"}))

    result = await service.deploy_pending("p1", source_id, deployed_by="alice")

    assert result.version == 1
    assert kafka.configs["orders-src"]["tasks.max"] == "2"
    assert kafka.status_polls["orders-src"] == [0.0]


async def test_deploy_pending_rejected_by_connect_keeps_pending(kafka, burst, repository, registry, pipeline, source_config, view):
    manager = PendingChangeManager(repository, registry)
    service = ConnectorCommandService(kafka, burst, manager)
    source_id = pipeline.source_connector.id
    manager.stage_change(source_id, dict(source_config, **{"tasks.max": "2"}))
    kafka.rejections["update_connector"] = "Connector configuration is invalid"

    with pytest.raises(CommandRejected):
        await service.deploy_pending("p1", source_id)

    assert repository.get_connector(source_id).has_pending_changes
    assert kafka.status_polls["orders-src"] == [0.0]


async def test_deploy_pending_without_pending_makes_no_calls(kafka, burst, repository, registry, pipeline):
    service = ConnectorCommandService(kafka, burst, PendingChangeManager(repository, registry))

    with pytest.raises(ValidationError):
        await service.deploy_pending("p1", pipeline.source_connector.id)

    assert kafka.calls == []


async def test_deploy_pending_requires_manager(service):
    with pytest.raises(ConnectorControlError):
        await service.deploy_pending("p1", "c1")
