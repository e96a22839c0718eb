"""Kafka Connect REST API client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from connector_control.config import KAFKA_CONNECT_URL, REQUEST_TIMEOUT_SECONDS
from connector_control.masking import mask_config
from connector_control.retry import retry_on_connection_error

logger = logging.getLogger(__name__)


class KafkaConnectError(requests.exceptions.HTTPError):
    """HTTP error whose message is the detail Kafka Connect returned."""

    def __init__(self, message: str, response=None, status_code: Optional[int] = None):
        super().__init__(message, response=response)
        self.detail_message = message
        self.status_code = status_code

    def __str__(self):
        return self.detail_message


def extract_error_detail(response: requests.Response) -> str:
    """Pull the human-readable error out of a Kafka Connect error response.

    Config validation errors are the real cause when present, so they win
    over the generic message.
    """
    try:
        error_json = response.json()
    except ValueError:
        return response.text[:2000] if response.text else f"HTTP {response.status_code}"

    if not isinstance(error_json, dict):
        return str(error_json)

    config_errors = []
    for config_item in error_json.get("configs", []) or []:
        if not isinstance(config_item, dict):
            continue
        value = config_item.get("value")
        if isinstance(value, dict) and value.get("errors"):
            config_errors.extend(value["errors"])
        if config_item.get("errors"):
            config_errors.extend(config_item["errors"])
    if config_errors:
        return "; ".join(config_errors[:5])

    detail = (
        error_json.get("message")
        or error_json.get("error")
        or error_json.get("error_message")
    )
    return detail or response.text[:2000] or "Unknown error from Kafka Connect"


class KafkaConnectClient:
    """Client for interacting with Kafka Connect REST API."""

    def __init__(
        self,
        base_url: str = KAFKA_CONNECT_URL,
        timeout: int = REQUEST_TIMEOUT_SECONDS,
        max_retries: int = 3
    ):
        """Initialize Kafka Connect client.

        Args:
            base_url: Base URL for Kafka Connect REST API (without /connectors)
            timeout: Request timeout in seconds
            max_retries: Maximum number of retries for gateway errors
        """
        base_url = base_url.rstrip("/")
        if base_url.endswith("/connectors"):
            base_url = base_url[: -len("/connectors")]
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()

        # Retry gateway errors but not 500: its body carries the real message
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1.0,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["GET", "POST", "PUT", "DELETE"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @retry_on_connection_error(max_attempts=3, delay=1.0, backoff=2.0)
    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Make HTTP request to Kafka Connect API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint (without base URL)
            data: Request body data
            params: Query parameters

        Returns:
            Response JSON data, or an empty dict for empty responses

        Raises:
            KafkaConnectError: If Kafka Connect answers with an error status
            requests.RequestException: If the request cannot be completed
        """
        url = f"{self.base_url}{endpoint}"
        if data is not None:
            logger.debug(f"Kafka Connect {method} {url} with data: {mask_config(data)}")

        response = self.session.request(
            method=method,
            url=url,
            json=data,
            params=params,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )

        if response.status_code >= 400:
            detail = extract_error_detail(response)
            if response.status_code == 404:
                logger.debug(f"Kafka Connect API {method} {url} returned 404 Not Found")
            elif response.status_code >= 500:
                logger.error(f"Kafka Connect API {method} {url} failed with status {response.status_code}: {detail}")
            else:
                logger.warning(f"Kafka Connect API {method} {url} failed with status {response.status_code}: {detail}")
            raise KafkaConnectError(detail, response=response, status_code=response.status_code)

        if response.content:
            return response.json()
        return {}

    @staticmethod
    def _encode(connector_name: str) -> str:
        # Connector names may contain characters such as '#'
        return quote(connector_name, safe="")

    def get_connector_status(self, connector_name: str) -> Optional[Dict[str, Any]]:
        """Get connector status.

        Args:
            connector_name: Name of the connector

        Returns:
            Status document ``{name, connector: {state, worker_id}, tasks: [...]}``,
            or None if the connector doesn't exist
        """
        try:
            return self._request("GET", f"/connectors/{self._encode(connector_name)}/status")
        except KafkaConnectError as e:
            if e.status_code == 404:
                logger.debug(f"Connector {connector_name} not found (404)")
                return None
            raise

    def update_connector(self, connector_name: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update a connector's configuration.

        ``PUT /connectors/{name}/config`` creates the connector when it does
        not exist yet.

        Args:
            connector_name: Name of the connector
            config: Full connector configuration

        Returns:
            Connector information returned by Kafka Connect
        """
        logger.info(f"Updating connector: {connector_name}")
        body = dict(config)
        body.setdefault("name", connector_name)
        response = self._request("PUT", f"/connectors/{self._encode(connector_name)}/config", data=body)
        logger.info(f"Connector updated: {connector_name}")
        return response

    def pause_connector(self, connector_name: str) -> None:
        """Pause a connector and all of its tasks."""
        logger.info(f"Pausing connector: {connector_name}")
        self._request("PUT", f"/connectors/{self._encode(connector_name)}/pause")
        logger.info(f"Connector pause requested: {connector_name}")

    def resume_connector(self, connector_name: str) -> None:
        """Resume a paused connector."""
        logger.info(f"Resuming connector: {connector_name}")
        self._request("PUT", f"/connectors/{self._encode(connector_name)}/resume")
        logger.info(f"Connector resume requested: {connector_name}")

    def restart_task(self, connector_name: str, task_number: int) -> None:
        """Restart a single task of a connector."""
        logger.info(f"Restarting task {task_number} of connector: {connector_name}")
        self._request("POST", f"/connectors/{self._encode(connector_name)}/tasks/{task_number}/restart")
        logger.info(f"Task restart requested: {connector_name}/{task_number}")

    def restart_connector(
        self,
        connector_name: str,
        include_tasks: bool = False,
        only_failed: bool = False
    ) -> Dict[str, Any]:
        """Restart a connector, optionally with its (failed) tasks."""
        logger.info(f"Restarting connector: {connector_name}")
        params = {}
        if include_tasks:
            params["includeTasks"] = "true"
        if only_failed:
            params["onlyFailed"] = "true"
        response = self._request(
            "POST",
            f"/connectors/{self._encode(connector_name)}/restart",
            params=params or None
        )
        logger.info(f"Connector restart requested: {connector_name}")
        return response

    def test_connection(self) -> bool:
        """Test connection to Kafka Connect REST API.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            self._request("GET", "/")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Kafka Connect connection test failed: {e}")
            return False
