"""Tests for the REST API."""

import pytest
from fastapi.testclient import TestClient

from connector_control.api import create_app
from connector_control.database.session import build_engine, check_db_connection, get_db
from connector_control.masking import MASK_PLACEHOLDER

from conftest import POSTGRES_SOURCE_CLASS


@pytest.fixture
def client(session_factory, registry, kafka, scheduler):
    app = create_app(session_factory=session_factory, registry=registry, kafka_client=kafka, scheduler=scheduler)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_registry_versions_lifecycle(client, source_config):
    body = {"kind": "source", "connector_class": POSTGRES_SOURCE_CLASS, "config": source_config, "created_by": "alice"}

    created = client.post("/api/registry/connectors/orders-src/versions", json=body).json()["data"]
    assert created["version"] == 1
    assert created["config"]["database.password"] == MASK_PLACEHOLDER

    activated = client.post("/api/registry/connectors/orders-src/versions/1/activate").json()["data"]
    assert activated["is_active"]

    listed = client.get("/api/registry/connectors/orders-src/versions").json()["data"]
    assert [(v["version"], v["is_active"]) for v in listed] == [(1, True)]


def test_registry_errors(client):
    missing = client.post("/api/registry/connectors/orders-src/versions/3/activate")
    assert missing.status_code == 404
    assert missing.json()["success"] is False

    invalid = client.post(
        "/api/registry/connectors/orders-src/versions",
        json={"kind": "source", "connector_class": POSTGRES_SOURCE_CLASS, "config": {}},
    )
    assert invalid.status_code == 400
    assert invalid.json()["field"] == "config"


def test_stage_diff_and_deploy(client, pipeline, kafka, source_config):
    source_id = pipeline.source_connector.id
    edited = dict(source_config, **{"database.password": MASK_PLACEHOLDER, "tasks.max": "2"})

    staged = client.post(f"/api/connectors/{source_id}/pending", json={"config": edited, "updated_by": "alice"})
    assert staged.status_code == 200
    assert staged.json()["data"]["has_pending_changes"]

    diff = client.get(f"/api/connectors/{source_id}/pending/diff").json()["data"]
    assert diff == [{"field": "tasks.max", "old_value": "1", "new_value": "2", "change_type": "changed"}]

    deployed = client.post(f"/api/connectors/{source_id}/deploy-pending", json={"deployed_by": "alice"})
    assert deployed.status_code == 200
    assert deployed.json()["data"]["version"] == 1
    assert kafka.configs["orders-src"]["database.password"] == "s3cr3t"

    resolved = client.get(f"/api/connectors/{source_id}/config").json()["data"]
    assert resolved["source"] == "registry"
    assert resolved["config"]["tasks.max"] == "2"
    assert resolved["config"]["database.password"] == MASK_PLACEHOLDER


def test_deploy_without_pending_is_rejected(client, pipeline, kafka):
    response = client.post(f"/api/connectors/{pipeline.source_connector.id}/deploy-pending", json={})

    assert response.status_code == 400
    assert kafka.calls == []


def test_dismiss_pending(client, pipeline, source_config):
    source_id = pipeline.source_connector.id
    client.post(f"/api/connectors/{source_id}/pending", json={"config": source_config})

    dismissed = client.post(f"/api/connectors/{source_id}/dismiss-pending").json()["data"]

    assert dismissed["pending_config"] is None
    assert client.get(f"/api/connectors/{source_id}/pending/diff").status_code == 400


def test_pause_returns_refreshed_status(client, pipeline, kafka):
    response = client.post("/api/connectors/orders-src/pause")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pipeline_status"] == "paused"
    assert {table["status"] for table in data["tables"]} == {"paused"}
    assert kafka.calls == [("pause_connector", "orders-src")]


def test_rejected_command_is_a_conflict(client, pipeline, kafka):
    kafka.rejections["resume_connector"] = "Connector orders-src is not paused"

    response = client.post("/api/connectors/orders-src/resume")

    assert response.status_code == 409
    assert response.json()["error"] == "Connector orders-src is not paused"


def test_unknown_connector_is_not_found(client, pipeline):
    assert client.post("/api/connectors/nope/pause").status_code == 404


def test_pipeline_status_and_monitor(client, pipeline, kafka):
    status = client.get(f"/api/pipelines/{pipeline.id}/status").json()["data"]
    assert status["pipeline_status"] == "streaming"
    assert [t["table_name"] for t in status["tables"]] == ["orders", "customers"]
    assert len(status["tasks"]) == 3

    opened = client.post(f"/api/pipelines/{pipeline.id}/monitor")
    assert opened.status_code == 200

    closed = client.delete(f"/api/pipelines/{pipeline.id}/monitor").json()["data"]
    assert closed["stopped_jobs"] == 1


def test_pipeline_progress(client, pipeline):
    pending = client.get(f"/api/pipelines/{pipeline.id}/progress").json()["data"]
    assert {m["event_status"] for m in pending["milestones"]} == {"pending"}

    captured = client.get(f"/api/pipelines/{pipeline.id}/progress", params={"capture": True}).json()["data"]
    assert captured["progress"]["loading_started"]["event_status"] == "completed"

    assert client.get("/api/pipelines/missing/progress").status_code == 404


def test_list_pipelines_masks_connector_secrets(client, pipeline):
    [listed] = client.get("/api/pipelines").json()["data"]

    assert listed["id"] == pipeline.id
    assert listed["source_connector"]["name"] == "orders-src"
    assert listed["source_connector"]["config"]["database.password"] == MASK_PLACEHOLDER


def test_check_db_connection(engine, tmp_path):
    assert check_db_connection(engine)

    unreachable = build_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    assert not check_db_connection(unreachable)
