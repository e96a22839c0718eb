"""Tests for the versioned connector registry."""

from datetime import datetime

import pytest
import requests

from connector_control.exceptions import ExternalServiceUnavailable, NotFoundError, ValidationError
from connector_control.registry import (
    RegistryClient,
    VersionStore,
    build_registry,
    compute_checksum,
    evaluate_policies,
)

from conftest import JDBC_SINK_CLASS, POSTGRES_SOURCE_CLASS, FakeResponse


def test_versions_are_numbered_monotonically_without_dedup(registry, source_config):
    first = registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config, created_by="alice")
    second = registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config, created_by="bob")

    assert (first.version, second.version) == (1, 2)
    assert first.checksum == second.checksum
    assert [v.version for v in registry.list_versions("orders-src")] == [1, 2]


def test_versions_are_independent_per_name(registry, source_config, sink_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)
    created = registry.create_version("orders-sink", "sink", JDBC_SINK_CLASS, sink_config)

    assert created.version == 1


def test_create_does_not_activate(registry, source_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)

    assert registry.get_active_version("orders-src") is None
    assert registry.get_active_config("orders-src") is None


def test_activate_moves_single_active_pointer(registry, source_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, dict(source_config, **{"tasks.max": "2"}))

    registry.activate_version("orders-src", 2)
    registry.activate_version("orders-src", 1)

    versions = registry.list_versions("orders-src")
    assert [v.is_active for v in versions] == [True, False]
    assert registry.get_active_version("orders-src").version == 1


def test_activate_unknown_version_leaves_pointer_unchanged(registry, source_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)
    registry.activate_version("orders-src", 1)

    with pytest.raises(NotFoundError):
        registry.activate_version("orders-src", 7)
    with pytest.raises(NotFoundError):
        registry.activate_version("unknown", 1)

    assert registry.get_active_version("orders-src").version == 1


def test_stored_versions_cannot_be_edited_through_returned_objects(registry, source_config):
    created = registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)
    source_config["tasks.max"] = "4"
    created.config["tasks.max"] = "9"

    stored = registry.get_version("orders-src", 1)

    assert stored.config["tasks.max"] == "1"
    assert stored.checksum == created.checksum


def test_get_missing_version_raises(registry, source_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)

    with pytest.raises(NotFoundError):
        registry.get_version("orders-src", 2)


def test_create_rejects_missing_fields(registry):
    with pytest.raises(ValidationError) as exc_info:
        registry.create_version("orders-src", "source", "", {"a": "b"})
    assert exc_info.value.field == "connector_class"

    with pytest.raises(ValidationError):
        registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, {})


def test_policy_errors_block_version_creation(registry, sink_config):
    sink_config["primary.key.mode"] = "none"

    with pytest.raises(ValidationError) as exc_info:
        registry.create_version("orders-sink", "sink", JDBC_SINK_CLASS, sink_config)

    assert "upsert" in str(exc_info.value)
    with pytest.raises(NotFoundError):
        registry.list_versions("orders-sink")


def test_policy_warnings_are_kept_on_the_version(registry, source_config):
    source_config["tasks.max"] = "12"
    source_config["errors.tolerance"] = "all"

    created = registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config)

    assert len(created.warnings) == 2
    assert registry.get_version("orders-src", 1).warnings == created.warnings


def test_evaluate_policies_auto_evolve_without_auto_create():
    warnings, errors = evaluate_policies(
        "sink",
        JDBC_SINK_CLASS,
        {"auto.create": "false", "auto.evolve": True, "insert.mode": "insert"},
    )

    assert errors == []
    assert warnings == ["auto.evolve enabled while auto.create disabled"]


def test_checksum_ignores_key_order():
    assert compute_checksum({"a": 1, "b": "2"}) == compute_checksum({"b": "2", "a": 1})
    assert compute_checksum({"a": 1}) != compute_checksum({"a": "1"})


def test_build_registry_picks_implementation(session_factory):
    assert isinstance(build_registry("", session_factory), VersionStore)
    assert isinstance(build_registry("http://registry:5002", session_factory), RegistryClient)


class TestRegistryClient:

    def _client(self, monkeypatch, response=None, error=None):
        client = RegistryClient("http://registry:5002/")
        calls = []

        def fake_request(method, url, json=None, timeout=None):
            calls.append((method, url, json))
            if error is not None:
                raise error
            return response

        monkeypatch.setattr(client.session, "request", fake_request)
        return client, calls

    def test_create_version_posts_registry_contract(self, monkeypatch, source_config):
        response = FakeResponse(201, {
            "success": True,
            "connector": {"name": "orders-src"},
            "version": {"id": 10, "version": 3, "checksum": "abc"},
            "warnings": ["tasks.max exceeds recommended threshold (8)"],
        })
        client, calls = self._client(monkeypatch, response)

        created = client.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config, "alice")

        method, url, body = calls[0]
        assert method == "POST"
        assert url == "http://registry:5002/api/registry/connectors/orders-src/versions"
        assert body["connectorClass"] == POSTGRES_SOURCE_CLASS
        assert body["createdBy"] == "alice"
        assert created.version == 3
        assert created.checksum == "abc"
        assert created.warnings == ["tasks.max exceeds recommended threshold (8)"]

    def test_active_version_from_version_list(self, monkeypatch):
        response = FakeResponse(200, {
            "connector": {"name": "orders-src", "kind": "source", "connector_class": POSTGRES_SOURCE_CLASS},
            "versions": [
                {"version": 2, "config": {"tasks.max": "2"}, "checksum": "c2", "is_active": True},
                {"version": 1, "config": {"tasks.max": "1"}, "checksum": "c1", "is_active": False},
            ],
        })
        client, calls = self._client(monkeypatch, response)

        active = client.get_active_version("orders-src")

        assert calls[0][:2] == ("GET", "http://registry:5002/api/connectors/orders-src/versions")
        assert active.version == 2
        assert active.config == {"tasks.max": "2"}
        assert [v.version for v in client.list_versions("orders-src")] == [1, 2]

    def test_version_timestamps_are_converted_to_utc(self, monkeypatch):
        response = FakeResponse(200, {
            "connector": {"name": "orders-src", "kind": "source", "connector_class": POSTGRES_SOURCE_CLASS},
            "versions": [
                {"version": 1, "config": {}, "checksum": "c1", "created_at": "2024-03-01T12:00:00+02:00"},
                {"version": 2, "config": {}, "checksum": "c2", "created_at": "2024-03-01T12:00:00Z"},
                {"version": 3, "config": {}, "checksum": "c3", "created_at": "2024-03-01T12:00:00"},
            ],
        })
        client, _ = self._client(monkeypatch, response)

        stamps = [v.created_at for v in client.list_versions("orders-src")]

        assert stamps == [
            datetime(2024, 3, 1, 10, 0),
            datetime(2024, 3, 1, 12, 0),
            datetime(2024, 3, 1, 12, 0),
        ]

    def test_unreachable_registry_is_unavailable(self, monkeypatch):
        client, _ = self._client(monkeypatch, error=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(ExternalServiceUnavailable):
            client.get_active_version("orders-src")

    def test_error_statuses_map_to_exceptions(self, monkeypatch):
        client, _ = self._client(monkeypatch, FakeResponse(404, {"success": False, "error": "Connector not found"}))
        with pytest.raises(NotFoundError):
            client.list_versions("missing")

        client, _ = self._client(monkeypatch, FakeResponse(400, {
            "success": False,
            "error": "Policy validation failed",
            "details": [{"message": "insert.mode=upsert requires pk.mode to be record_key or record_value"}],
        }))
        with pytest.raises(ValidationError) as exc_info:
            client.create_version("orders-sink", "sink", JDBC_SINK_CLASS, {"insert.mode": "upsert"})
        assert "pk.mode" in str(exc_info.value)

        client, _ = self._client(monkeypatch, FakeResponse(500, text="boom", reason="Internal Server Error"))
        with pytest.raises(ExternalServiceUnavailable):
            client.list_versions("orders-src")
