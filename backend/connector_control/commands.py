"""Mutating connector commands, each followed by a burst status refresh."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import requests

from connector_control.burst_refresher import MutationBurstRefresher
from connector_control.exceptions import CommandRejected, ConnectorControlError, ValidationError
from connector_control.kafka_connect_client import KafkaConnectError
from connector_control.models import Connector, DeployResult
from connector_control.pending_changes import PendingChangeManager

logger = logging.getLogger(__name__)


def _require(value: Any, field: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required", field=field)


class ConnectorCommandService:
    """Issues pause/resume/restart/deploy commands against Kafka Connect.

    Input is validated before any network call. Whether the command is
    accepted or rejected, a burst refresh runs afterwards so the view shows
    what Kafka Connect actually did.
    """

    def __init__(
        self,
        kafka_client,
        burst_refresher: MutationBurstRefresher,
        pending_manager: Optional[PendingChangeManager] = None,
        on_deployed: Optional[Callable[[str], Awaitable[Any]]] = None
    ):
        self.kafka_client = kafka_client
        self.burst_refresher = burst_refresher
        self.pending_manager = pending_manager
        # Called with the pipeline id after a deploy succeeds, before the burst
        self.on_deployed = on_deployed

    async def _issue(self, command: str, pipeline_id: str, connector_name: str, call: Callable[[], Any]) -> Any:
        logger.info(f"Issuing {command} for connector {connector_name} (pipeline {pipeline_id})")
        try:
            return await asyncio.to_thread(call)
        except KafkaConnectError as e:
            logger.warning(f"Kafka Connect rejected {command} for {connector_name}: {e}")
            raise CommandRejected(
                str(e),
                command=command,
                connector_name=connector_name,
                status_code=e.status_code,
            ) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"{command} for {connector_name} failed: {e}")
            raise CommandRejected(
                f"Kafka Connect unreachable: {e}",
                command=command,
                connector_name=connector_name,
            ) from e
        finally:
            await self.burst_refresher.burst(pipeline_id)

    async def pause_connector(self, pipeline_id: str, connector_name: str) -> None:
        _require(pipeline_id, "pipeline_id")
        _require(connector_name, "connector_name")
        await self._issue("pause", pipeline_id, connector_name,
                          lambda: self.kafka_client.pause_connector(connector_name))

    async def resume_connector(self, pipeline_id: str, connector_name: str) -> None:
        _require(pipeline_id, "pipeline_id")
        _require(connector_name, "connector_name")
        await self._issue("resume", pipeline_id, connector_name,
                          lambda: self.kafka_client.resume_connector(connector_name))

    async def restart_task(self, pipeline_id: str, connector_name: str, task_number: int) -> None:
        _require(pipeline_id, "pipeline_id")
        _require(connector_name, "connector_name")
        _require(task_number, "task_number")
        if isinstance(task_number, bool) or not isinstance(task_number, int) or task_number < 0:
            raise ValidationError("task_number must be a non-negative integer", field="task_number")
        await self._issue("restart-task", pipeline_id, connector_name,
                          lambda: self.kafka_client.restart_task(connector_name, task_number))

    async def restart_connector(
        self,
        pipeline_id: str,
        connector_name: str,
        include_tasks: bool = True,
        only_failed: bool = False
    ) -> Dict[str, Any]:
        _require(pipeline_id, "pipeline_id")
        _require(connector_name, "connector_name")
        return await self._issue(
            "restart",
            pipeline_id,
            connector_name,
            lambda: self.kafka_client.restart_connector(
                connector_name,
                include_tasks=include_tasks,
                only_failed=only_failed,
            ),
        )

    def _apply_config(self, connector: Connector, config: Dict[str, Any]) -> None:
        self.kafka_client.update_connector(connector.name, config)

    async def deploy_pending(
        self,
        pipeline_id: str,
        connector_id: str,
        deployed_by: Optional[str] = None,
        apply_to_connect: bool = True
    ) -> DeployResult:
        """Deploy a connector's pending config and push it to Kafka Connect.

        Args:
            pipeline_id: Pipeline to refresh afterwards
            connector_id: Connector with a pending change
            deployed_by: Actor recorded on the version and audit entry
            apply_to_connect: Push the config with ``PUT /connectors/{name}/config``

        Returns:
            DeployResult of the deployment
        """
        _require(pipeline_id, "pipeline_id")
        _require(connector_id, "connector_id")
        if self.pending_manager is None:
            raise ConnectorControlError("deploy_pending needs a PendingChangeManager")

        connector = self.pending_manager.repository.get_connector(connector_id)
        if not connector.has_pending_changes:
            raise ValidationError(f"Connector {connector.name} has no pending changes to deploy", field="pending_config")

        apply = self._apply_config if apply_to_connect else None
        logger.info(f"Issuing deploy-pending for connector {connector.name} (pipeline {pipeline_id})")
        try:
            result = await asyncio.to_thread(self.pending_manager.deploy, connector_id, deployed_by, apply)
            if self.on_deployed is not None:
                await self.on_deployed(pipeline_id)
            return result
        finally:
            await self.burst_refresher.burst(pipeline_id)
