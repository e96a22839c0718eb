"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from connector_control.cli import CliContext, cli

from conftest import POSTGRES_SOURCE_CLASS


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def obj(session_factory, registry, kafka, engine):
    return CliContext(session_factory=session_factory, registry=registry, kafka_client=kafka, bind=engine)


def test_versions_marks_the_active_one(runner, obj, registry, source_config):
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config, created_by="alice")
    registry.create_version("orders-src", "source", POSTGRES_SOURCE_CLASS, source_config, created_by="bob")

    result = runner.invoke(cli, ["activate", "orders-src", "2"], obj=obj)
    assert result.exit_code == 0

    result = runner.invoke(cli, ["versions", "orders-src"], obj=obj)
    lines = result.output.splitlines()
    assert lines[0].startswith("   v1")
    assert lines[1].startswith(" * v2")


def test_activate_unknown_version_fails(runner, obj):
    result = runner.invoke(cli, ["activate", "orders-src", "4"], obj=obj)

    assert result.exit_code == 1


def test_stage_diff_and_dismiss(runner, obj, pipeline):
    source_id = pipeline.source_connector.id

    result = runner.invoke(cli, ["stage", source_id, "--set", "tasks.max=2", "--by", "alice"], obj=obj)
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["diff", source_id], obj=obj)
    assert "tasks.max: '1' -> '2'" in result.output

    result = runner.invoke(cli, ["dismiss", source_id], obj=obj)
    assert result.exit_code == 0
    assert runner.invoke(cli, ["diff", source_id], obj=obj).exit_code == 1


def test_stage_from_file(runner, obj, pipeline, source_config, tmp_path):
    config_file = tmp_path / "orders-src.json"
    config_file.write_text(json.dumps(dict(source_config, **{"snapshot.mode": "never"})))

    result = runner.invoke(cli, ["stage", pipeline.source_connector.id, "--config-file", str(config_file)], obj=obj)

    assert result.exit_code == 0, result.output
    assert "snapshot.mode" in runner.invoke(cli, ["diff", pipeline.source_connector.id], obj=obj).output


def test_deploy_without_waiting(runner, obj, pipeline, kafka):
    source_id = pipeline.source_connector.id
    runner.invoke(cli, ["stage", source_id, "--set", "tasks.max=2"], obj=obj)

    result = runner.invoke(cli, ["deploy", source_id, "--by", "alice"], obj=obj)

    assert result.exit_code == 0, result.output
    assert "as v1" in result.output
    assert kafka.configs["orders-src"]["tasks.max"] == "2"


def test_pause_prints_refreshed_view(runner, obj, pipeline, kafka):
    result = runner.invoke(cli, ["pause", "orders-src", "--no-wait"], obj=obj)

    assert result.exit_code == 0, result.output
    assert kafka.calls == [("pause_connector", "orders-src")]
    assert '"pipeline_status": "paused"' in result.output


def test_status_and_progress(runner, obj, pipeline):
    result = runner.invoke(cli, ["status", pipeline.id], obj=obj)
    assert result.exit_code == 0, result.output
    assert f"Pipeline {pipeline.id}: streaming" in result.output
    assert "table public.orders: streaming" in result.output

    result = runner.invoke(cli, ["progress", pipeline.id, "--capture"], obj=obj)
    assert result.exit_code == 0, result.output
    assert "loading_started" in result.output


def test_unknown_pipeline_fails(runner, obj):
    assert runner.invoke(cli, ["status", "missing"], obj=obj).exit_code == 1


def test_pipelines_lists_connectors(runner, obj, pipeline):
    result = runner.invoke(cli, ["pipelines"], obj=obj)

    assert result.exit_code == 0, result.output
    assert pipeline.id in result.output
    assert "orders-src, orders-sink" in result.output
