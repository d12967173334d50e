"""Audit trail service."""

from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.models.admin import AuditLog

SYSTEM_ACTOR = "SYSTEM"


class AuditService:
    """Append-only audit logging for every non-payout transition."""

    async def log_action(
        self,
        db: AsyncSession,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        user_id: UUID | None = None,
        actor: str | None = None,
    ) -> AuditLog:
        """Add an audit entry to the current transaction.

        Args:
            db: Database session
            action: Action name (e.g., "earnings_auto_approve")
            resource_type: Resource type (e.g., "booking", "earnings")
            resource_id: Resource ID
            old_values: Previous state
            new_values: New state
            user_id: Acting user, None for system jobs
            actor: Free-form actor label, defaults to the user id or SYSTEM
        """
        audit = AuditLog(
            user_id=user_id,
            actor=actor or (str(user_id) if user_id else SYSTEM_ACTOR),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=old_values,
            new_values=new_values,
        )
        db.add(audit)
        return audit

    async def log_transition(
        self,
        db: AsyncSession,
        resource_type: str,
        resource_id: UUID,
        old_status: str | None,
        new_status: str,
        user_id: UUID | None = None,
        actor: str | None = None,
        **extra: Any,
    ) -> AuditLog:
        """Log a status change."""
        new_values: dict[str, Any] = {"status": new_status}
        new_values.update({k: _jsonable(v) for k, v in extra.items()})
        return await self.log_action(
            db,
            action=f"{resource_type}_{new_status}",
            resource_type=resource_type,
            resource_id=resource_id,
            old_values={"status": old_status} if old_status else None,
            new_values=new_values,
            user_id=user_id,
            actor=actor,
        )


def _jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


audit_service = AuditService()
