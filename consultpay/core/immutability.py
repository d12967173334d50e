"""Append-only enforcement for audit and ledger records using SQLAlchemy events."""

import logging
from datetime import UTC, datetime

from sqlalchemy import event

from consultpay.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_registered = False


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to modify an append-only record."""

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}. "
            "Audit and ledger records are append-only."
        )


def _reject(operation: str):
    def listener(mapper, connection, target):
        model_name = type(target).__name__
        logger.error(
            f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
            f"record_id={target.id} at {datetime.now(UTC).isoformat()}"
        )
        raise ImmutabilityViolationError(model_name, operation, str(target.id))

    return listener


def register_immutability_enforcement() -> None:
    """Block UPDATE and DELETE on append-only models.

    Must be called after models are imported but before session use. Safe to
    call more than once.
    """
    global _registered
    if _registered:
        return

    from consultpay.models.admin import AuditLog
    from consultpay.models.financial import SettlementLedgerEntry
    from consultpay.models.payout import PayoutLog

    for model in (PayoutLog, SettlementLedgerEntry, AuditLog):
        event.listen(model, "before_update", _reject("UPDATE"))
        event.listen(model, "before_delete", _reject("DELETE"))

    _registered = True
    logger.info("Immutability enforcement registered for audit and ledger records")
