"""
Batch Audit Service

Append-only audit sink for the cellar core. Entries join the caller's
transaction (flush, no commit) so a rolled-back operation leaves no audit
trail behind it.
"""
import json
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from cellar.db.models import AuditLog
from cellar.core.logging import batch_logger, operation_id_var


async def log_audit(
    db: AsyncSession,
    action: str,
    target_type: str,
    target_id: Optional[int] = None,
    description: Optional[str] = None,
    meta: Optional[dict] = None,
    user_id: Optional[int] = None,
    username: Optional[str] = None,
) -> AuditLog:
    """
    Record an audit event inside the current transaction.

    Args:
        db: Database session
        action: Action performed (e.g., 'batch.update', 'batch.stage_change')
        target_type: Type of entity affected (e.g., 'batch', 'measurement')
        target_id: ID of the affected entity
        description: Human-readable description of the action
        meta: JSON-serializable data, typically {"changes": ..., "reason": ...}
        user_id: ID of the user who performed the action (null for system)
        username: Username of the actor (denormalized for display)
    """
    audit_entry = AuditLog(
        user_id=user_id,
        username=username,
        action=action,
        target_type=target_type,
        target_id=target_id,
        description=description,
        meta=json.dumps(meta, default=str) if meta else None,
        operation_id=operation_id_var.get(),
    )
    db.add(audit_entry)
    await db.flush()

    batch_logger.info(
        "audit_logged",
        action=action,
        target_type=target_type,
        target_id=target_id,
    )
    return audit_entry


def diff_fields(
    before: Dict[str, Any],
    after: Dict[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Return {field: {"old": x, "new": y}} for every field whose value changed."""
    keys = fields if fields is not None else after.keys()
    changes = {}
    for key in keys:
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = {"old": old, "new": new}
    return changes


async def get_audit_trail(
    db: AsyncSession,
    target_type: str,
    target_id: int,
    actions: Optional[List[str]] = None,
) -> List[AuditLog]:
    """Audit entries for one target, oldest first."""
    query = select(AuditLog).where(
        AuditLog.target_type == target_type,
        AuditLog.target_id == target_id,
    )
    if actions:
        query = query.where(AuditLog.action.in_(actions))
    result = await db.execute(query.order_by(AuditLog.created_at, AuditLog.id))
    return list(result.scalars().all())


async def get_latest_audit(db: AsyncSession, target_type: str, target_id: int) -> Optional[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.target_type == target_type, AuditLog.target_id == target_id)
        .order_by(desc(AuditLog.created_at), desc(AuditLog.id))
        .limit(1)
    )
    return result.scalar_one_or_none()


def parse_meta(entry: AuditLog) -> dict:
    if not entry.meta:
        return {}
    return json.loads(entry.meta)


class AuditActions:
    """Standard audit action names."""
    # Batches
    BATCH_CREATE = "batch.create"
    BATCH_UPDATE = "batch.update"
    BATCH_STATUS_CHANGE = "batch.status_change"
    BATCH_STAGE_CHANGE = "batch.stage_change"
    BATCH_ARCHIVE = "batch.archive"
    BATCH_DELETE = "batch.delete"
    BATCH_PURGE = "batch.purge"

    # Volume operations
    BATCH_RACK = "batch.rack"
    BATCH_FILTER = "batch.filter"
    BATCH_TRANSFER = "batch.transfer"
    BATCH_MERGE = "batch.merge"
    BATCH_PACKAGE = "batch.package"
    RACKING_UPDATE = "racking.update"
    FILTER_UPDATE = "filter.update"

    # Lab / cellar work
    MEASUREMENT_UPDATE = "measurement.update"
    MEASUREMENT_DELETE = "measurement.delete"
    ADDITIVE_UPDATE = "additive.update"
    ADDITIVE_DELETE = "additive.delete"

    # Intake
    JUICE_TRANSFER = "juice.transfer"
    JUICE_ITEM_ARCHIVE = "juice.archive"


class AuditTargetTypes:
    """Standard target type names."""
    BATCH = "batch"
    MEASUREMENT = "measurement"
    ADDITIVE = "additive"
    RACKING = "racking"
    FILTER = "filter"
    JUICE_PURCHASE_ITEM = "juice_purchase_item"
    VESSEL = "vessel"
