import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import ValidationError
from .models import MAX_PAGE_SIZE, AdminAction, utcnow

logger = logging.getLogger("wallet-ledger.audit")


async def record_admin_action(
    session: AsyncSession,
    admin_id: str,
    action: str,
    target_id: str,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AdminAction:
    """Append an audit row inside the caller's transaction."""
    record = AdminAction(
        admin_id=admin_id,
        action=action,
        target_id=target_id,
        reason=reason,
        details=details or {},
        created_at=utcnow(),
    )
    session.add(record)
    await session.flush()
    logger.info(
        "admin_action admin=%s action=%s target=%s reason=%s",
        admin_id,
        action,
        target_id,
        reason,
    )
    return record


async def list_admin_actions(
    session: AsyncSession,
    admin_id: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[AdminAction], int]:
    """Return one page of audit rows (newest first) and the total match count."""
    if page < 1:
        raise ValidationError(f"Invalid page: {page}")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    conditions = []
    if admin_id:
        conditions.append(AdminAction.admin_id == admin_id)
    if action:
        conditions.append(AdminAction.action == action)
    if start is not None:
        conditions.append(AdminAction.created_at >= start)
    if end is not None:
        conditions.append(AdminAction.created_at <= end)

    total = await session.scalar(
        select(func.count()).select_from(AdminAction).where(*conditions)
    )
    result = await session.execute(
        select(AdminAction)
        .where(*conditions)
        .order_by(AdminAction.created_at.desc(), AdminAction.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total or 0)
