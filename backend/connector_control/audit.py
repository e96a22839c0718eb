"""Audit trail of connector configuration deployments."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from connector_control.database.models_db import AuditLogModel
from connector_control.masking import mask_config
from connector_control.models import DeployResult

logger = logging.getLogger(__name__)

DEPLOY_ACTION = "deploy_connector_config"


def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        value = mask_config(value)
    return json.loads(json.dumps(value, default=str))


def log_audit_event(
    db: Session,
    user_id: Optional[str],
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None
) -> bool:
    """Log an audit event to the database.

    Dict values are masked before they are stored. A failure to write the
    entry is logged and does not fail the calling operation.

    Args:
        db: Database session
        user_id: Actor performing the action (None for system actions)
        action: Action name (e.g., "deploy_connector_config")
        resource_type: Type of resource (e.g., "connector")
        resource_id: ID of the resource
        old_value: Previous state
        new_value: New state

    Returns:
        True if the entry was written
    """
    try:
        audit_log = AuditLogModel(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_value=_json_safe(old_value),
            new_value=_json_safe(new_value),
        )
        db.add(audit_log)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to log audit event: {type(e).__name__}: {e}")
        logger.error(f"  Action: {action}, Resource: {resource_type}, Resource ID: {resource_id}")
        return False


def record_deploy(db: Session, result: DeployResult, actor: Optional[str] = None) -> bool:
    """Record a deployment with its masked diff and whether it was degraded."""
    return log_audit_event(
        db,
        user_id=actor,
        action=DEPLOY_ACTION,
        resource_type="connector",
        resource_id=result.connector_id,
        new_value={
            "connector_name": result.connector_name,
            "deployed_version": result.version,
            "checksum": result.checksum,
            "degraded": result.degraded,
            "diff": [change.to_dict() for change in result.changes],
        },
    )


def list_audit_entries(db: Session, resource_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = db.query(AuditLogModel)
    if resource_id:
        query = query.filter(AuditLogModel.resource_id == resource_id)
    rows = query.order_by(AuditLogModel.created_at.desc()).limit(limit).all()
    return [
        {
            "id": row.id,
            "user_id": row.user_id,
            "action": row.action,
            "resource_type": row.resource_type,
            "resource_id": row.resource_id,
            "old_value": row.old_value,
            "new_value": row.new_value,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
