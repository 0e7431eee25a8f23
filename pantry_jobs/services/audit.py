"""
Audit record persistence used by worker handlers.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pantry_jobs.models.audit_log import AuditLog

_log = logging.getLogger(__name__)


async def write_audit(db: AsyncSession, owner_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> str:
    """Insert an audit record and return its id. Raises on database errors."""
    audit_id = str(uuid.uuid4())
    db.add(AuditLog(id=audit_id, owner_id=owner_id, action=action, details=details or {}))
    await db.commit()
    return audit_id


async def record_audit(db: AsyncSession, owner_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Best-effort variant for side records: a failure is logged, never raised."""
    try:
        return await write_audit(db, owner_id, action, details)
    except SQLAlchemyError as exc:
        await db.rollback()
        _log.warning(f"[audit] Could not record {action} for {owner_id}: {exc}")
        return None
