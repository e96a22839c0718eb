"""Versioned connector configuration registry.

Two implementations share the ``ConnectorRegistry`` contract: ``VersionStore``
keeps versions in the application database, ``RegistryClient`` talks to an
external registry service over HTTP.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from urllib3.util.retry import Retry

from connector_control.config import REQUEST_TIMEOUT_SECONDS
from connector_control.database.models_db import ConnectorVersionModel, RegistryConnectorModel
from connector_control.exceptions import ExternalServiceUnavailable, NotFoundError, ValidationError
from connector_control.models import ConnectorVersion, utcnow

logger = logging.getLogger(__name__)

JDBC_SINK_CLASS = "io.debezium.connector.jdbc.JdbcSinkConnector"
MAX_RECOMMENDED_TASKS = 8


def compute_checksum(config: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a config (sorted keys, compact)."""
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _normalize_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() == "true":
            return True
        if value.lower() == "false":
            return False
    return None


def evaluate_policies(kind: str, connector_class: str, config: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """Check a config against the registry's deployment policies.

    Args:
        kind: 'source' or 'sink'
        connector_class: Kafka Connect connector class
        config: Configuration to check

    Returns:
        Tuple of (warnings, errors). Errors block version creation.
    """
    warnings: List[str] = []
    errors: List[str] = []

    try:
        tasks_max = int(config.get("tasks.max"))
    except (TypeError, ValueError):
        tasks_max = None
    if tasks_max is not None and tasks_max > MAX_RECOMMENDED_TASKS:
        warnings.append(f"tasks.max exceeds recommended threshold ({MAX_RECOMMENDED_TASKS})")

    if str(config.get("errors.tolerance")).lower() == "all":
        warnings.append("errors.tolerance=all may hide data issues")

    if connector_class == JDBC_SINK_CLASS:
        pk_mode = config.get("primary.key.mode") or config.get("pk.mode") or ""
        if config.get("insert.mode") == "upsert" and pk_mode not in ("record_key", "record_value"):
            errors.append("insert.mode=upsert requires pk.mode to be record_key or record_value")
        auto_create = _normalize_boolean(config.get("auto.create"))
        auto_evolve = _normalize_boolean(config.get("auto.evolve"))
        if auto_create is False and auto_evolve is True:
            warnings.append("auto.evolve enabled while auto.create disabled")

    return warnings, errors


def _validate_version_request(name: str, kind: str, connector_class: str, config: Any) -> None:
    if not name:
        raise ValidationError("Connector name is required", field="name")
    if not kind:
        raise ValidationError("kind is required", field="kind")
    if not connector_class:
        raise ValidationError("connector_class is required", field="connector_class")
    if not isinstance(config, dict) or not config:
        raise ValidationError("config must be a non-empty object", field="config")


class ConnectorRegistry(ABC):
    """Append-only store of configuration versions with one active pointer per name."""

    @abstractmethod
    def create_version(
        self,
        name: str,
        kind: str,
        connector_class: str,
        config: Dict[str, Any],
        created_by: Optional[str] = None
    ) -> ConnectorVersion:
        """Append a new immutable version with the next version number."""

    @abstractmethod
    def activate_version(self, name: str, version: int) -> ConnectorVersion:
        """Point ``name`` at ``version``; NotFoundError if the pair does not exist."""

    @abstractmethod
    def get_version(self, name: str, version: int) -> ConnectorVersion:
        """Return one version; NotFoundError if it does not exist."""

    @abstractmethod
    def list_versions(self, name: str) -> List[ConnectorVersion]:
        """Return all versions of ``name``, oldest first."""

    @abstractmethod
    def get_active_version(self, name: str) -> Optional[ConnectorVersion]:
        """Return the active version, or None when nothing was activated yet."""

    def get_active_config(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the active version's config, or None."""
        active = self.get_active_version(name)
        return active.config if active else None


class VersionStore(ConnectorRegistry):
    """Registry backed by the ``registry_connectors``/``connector_versions`` tables."""

    def __init__(self, session_factory):
        """Initialize the store.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
        """
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except OperationalError as e:
            db.rollback()
            logger.error(f"Registry database unavailable: {e}")
            raise ExternalServiceUnavailable(f"Registry database unavailable: {e}", service="registry") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _get_connector(db: Session, name: str, lock: bool = False) -> RegistryConnectorModel:
        query = db.query(RegistryConnectorModel).filter(RegistryConnectorModel.name == name)
        if lock:
            query = query.with_for_update()
        connector = query.first()
        if not connector:
            raise NotFoundError(f"Registry connector {name} not found", resource_type="registry_connector", resource_id=name)
        return connector

    @staticmethod
    def _to_version(connector: RegistryConnectorModel, row: ConnectorVersionModel) -> ConnectorVersion:
        return ConnectorVersion(
            name=connector.name,
            kind=connector.kind,
            connector_class=connector.connector_class,
            config=row.config or {},
            version=row.version,
            checksum=row.checksum,
            is_active=connector.active_version == row.version,
            created_by=row.created_by,
            created_at=row.created_at,
            warnings=row.policy_warnings or [],
        )

    def create_version(
        self,
        name: str,
        kind: str,
        connector_class: str,
        config: Dict[str, Any],
        created_by: Optional[str] = None
    ) -> ConnectorVersion:
        """Append a new version of ``name``.

        Identical configs are not deduplicated; compare checksums before
        calling if that matters.

        Raises:
            ValidationError: If required fields are missing or a policy is violated
        """
        _validate_version_request(name, kind, connector_class, config)
        warnings, errors = evaluate_policies(kind, connector_class, config)
        if errors:
            raise ValidationError(
                f"Configuration policy violations: {'; '.join(errors)}",
                field="config",
                errors=errors,
            )

        with self._session() as db:
            connector = (
                db.query(RegistryConnectorModel)
                .filter(RegistryConnectorModel.name == name)
                .with_for_update()
                .first()
            )
            if not connector:
                connector = RegistryConnectorModel(name=name, kind=kind, connector_class=connector_class)
                db.add(connector)
                db.flush()
                logger.info(f"Registered new registry connector: {name}")
            elif connector.connector_class != connector_class:
                logger.info(f"Connector class of {name} changed: {connector.connector_class} -> {connector_class}")
                connector.connector_class = connector_class
                connector.updated_at = utcnow()

            max_version = (
                db.query(func.max(ConnectorVersionModel.version))
                .filter(ConnectorVersionModel.registry_connector_id == connector.id)
                .scalar()
            )
            row = ConnectorVersionModel(
                registry_connector_id=connector.id,
                version=(max_version or 0) + 1,
                config=json.loads(json.dumps(config, default=str)),
                checksum=compute_checksum(config),
                created_by=created_by,
                policy_warnings=warnings,
            )
            db.add(row)
            db.flush()
            version = self._to_version(connector, row)

        logger.info(f"Created version {version.version} of {name} (checksum {version.checksum[:12]})")
        for warning in warnings:
            logger.warning(f"Policy warning for {name} v{version.version}: {warning}")
        return version

    def activate_version(self, name: str, version: int) -> ConnectorVersion:
        with self._session() as db:
            connector = self._get_connector(db, name, lock=True)
            row = (
                db.query(ConnectorVersionModel)
                .filter(
                    ConnectorVersionModel.registry_connector_id == connector.id,
                    ConnectorVersionModel.version == version,
                )
                .first()
            )
            if not row:
                raise NotFoundError(
                    f"Version {version} of {name} not found",
                    resource_type="connector_version",
                    resource_id=f"{name}:{version}",
                )
            previous = connector.active_version
            connector.active_version = version
            connector.updated_at = utcnow()
            db.flush()
            activated = self._to_version(connector, row)

        logger.info(f"Activated version {version} of {name} (previous: {previous})")
        return activated

    def get_version(self, name: str, version: int) -> ConnectorVersion:
        with self._session() as db:
            connector = self._get_connector(db, name)
            row = (
                db.query(ConnectorVersionModel)
                .filter(
                    ConnectorVersionModel.registry_connector_id == connector.id,
                    ConnectorVersionModel.version == version,
                )
                .first()
            )
            if not row:
                raise NotFoundError(
                    f"Version {version} of {name} not found",
                    resource_type="connector_version",
                    resource_id=f"{name}:{version}",
                )
            return self._to_version(connector, row)

    def list_versions(self, name: str) -> List[ConnectorVersion]:
        with self._session() as db:
            connector = self._get_connector(db, name)
            return [self._to_version(connector, row) for row in connector.versions]

    def get_active_version(self, name: str) -> Optional[ConnectorVersion]:
        with self._session() as db:
            connector = self._get_connector(db, name)
            if connector.active_version is None:
                return None
            row = (
                db.query(ConnectorVersionModel)
                .filter(
                    ConnectorVersionModel.registry_connector_id == connector.id,
                    ConnectorVersionModel.version == connector.active_version,
                )
                .first()
            )
            return self._to_version(connector, row) if row else None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        # Stored timestamps are naive UTC
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class RegistryClient(ConnectorRegistry):
    """Client for an external connector registry service.

    Responses use ``{success, error?}`` envelopes; ``success: false`` and
    error statuses are mapped onto the exception taxonomy.
    """

    def __init__(self, base_url: str, timeout: int = REQUEST_TIMEOUT_SECONDS, max_retries: int = 2):
        """Initialize registry client.

        Args:
            base_url: Base URL of the registry service
            timeout: Request timeout in seconds
            max_retries: Retries for gateway errors
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET", "POST"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method=method, url=url, json=data, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.warning(f"Registry request {method} {url} failed: {e}")
            raise ExternalServiceUnavailable(f"Registry unreachable: {e}", service="registry", url=url) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.ok and payload.get("success") is not False:
            return payload

        message = payload.get("error") or response.reason or "Registry request failed"
        details = payload.get("details")
        if isinstance(details, list) and details:
            detail_text = "; ".join(
                str(item.get("message", item)) if isinstance(item, dict) else str(item)
                for item in details
            )
            message = f"{message}: {detail_text}"

        if response.status_code == 404:
            raise NotFoundError(message, resource_type="registry_connector", resource_id=path)
        if response.status_code == 400:
            raise ValidationError(message, field="config")
        logger.error(f"Registry request {method} {url} failed with status {response.status_code}: {message}")
        raise ExternalServiceUnavailable(message, service="registry", status_code=response.status_code)

    def _version_from_row(self, name: str, connector: Dict[str, Any], row: Dict[str, Any]) -> ConnectorVersion:
        return ConnectorVersion(
            name=name,
            kind=connector.get("kind", ""),
            connector_class=connector.get("connector_class") or connector.get("connectorClass", ""),
            config=row.get("config") or {},
            version=int(row["version"]),
            checksum=row.get("checksum", ""),
            is_active=bool(row.get("is_active")),
            created_by=row.get("created_by"),
            created_at=_parse_timestamp(row.get("created_at")),
            warnings=row.get("policy_warnings") or [],
        )

    def create_version(
        self,
        name: str,
        kind: str,
        connector_class: str,
        config: Dict[str, Any],
        created_by: Optional[str] = None
    ) -> ConnectorVersion:
        _validate_version_request(name, kind, connector_class, config)
        payload = self._request(
            "POST",
            f"/api/registry/connectors/{quote(name, safe='')}/versions",
            data={
                "kind": kind,
                "connectorClass": connector_class,
                "config": config,
                "createdBy": created_by,
            },
        )
        created = payload.get("version") or {}
        if "version" not in created:
            raise ExternalServiceUnavailable("Registry response did not include a version", service="registry")
        logger.info(f"Registry created version {created['version']} of {name}")
        return ConnectorVersion(
            name=name,
            kind=kind,
            connector_class=connector_class,
            config=config,
            version=int(created["version"]),
            checksum=created.get("checksum") or compute_checksum(config),
            created_by=created_by,
            warnings=payload.get("warnings") or [],
        )

    def activate_version(self, name: str, version: int) -> ConnectorVersion:
        self._request("POST", f"/api/connectors/{quote(name, safe='')}/versions/{int(version)}/activate")
        logger.info(f"Registry activated version {version} of {name}")
        return self.get_version(name, version)

    def _fetch_versions(self, name: str) -> List[ConnectorVersion]:
        payload = self._request("GET", f"/api/connectors/{quote(name, safe='')}/versions")
        connector = payload.get("connector") or {}
        rows = payload.get("versions") or []
        versions = [self._version_from_row(name, connector, row) for row in rows]
        return sorted(versions, key=lambda v: v.version)

    def get_version(self, name: str, version: int) -> ConnectorVersion:
        for candidate in self._fetch_versions(name):
            if candidate.version == version:
                return candidate
        raise NotFoundError(
            f"Version {version} of {name} not found",
            resource_type="connector_version",
            resource_id=f"{name}:{version}",
        )

    def list_versions(self, name: str) -> List[ConnectorVersion]:
        return self._fetch_versions(name)

    def get_active_version(self, name: str) -> Optional[ConnectorVersion]:
        for candidate in self._fetch_versions(name):
            if candidate.is_active:
                return candidate
        return None


def build_registry(registry_url: str, session_factory) -> ConnectorRegistry:
    """Use the external registry when a URL is configured, else the local store."""
    if registry_url:
        logger.info(f"Using external connector registry at {registry_url}")
        return RegistryClient(registry_url)
    return VersionStore(session_factory)
