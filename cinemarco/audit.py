from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog


def _normalize_detail(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def add_audit_log(
    db: AsyncSession,
    *,
    action: str,
    message: str,
    detail: str | None = None,
) -> None:
    db.add(AuditLog(action=action, message=message, detail=_normalize_detail(detail)))


async def list_audit_log(db: AsyncSession, *, limit: int = 50) -> list[dict]:
    rows = (
        await db.execute(select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit))
    ).scalars().all()
    return [
        {
            "id": row.id,
            "action": row.action,
            "message": row.message,
            "detail": row.detail,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
