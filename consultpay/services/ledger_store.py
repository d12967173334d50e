"""Transactional primitives shared by the money-moving services.

Every state change with money consequences goes through one of these guards:
a compare-and-set UPDATE, a row lock, or a unique constraint.
"""

import logging
from collections.abc import Iterable
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consultpay.database import Base

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


async def compare_and_set(
    db: AsyncSession,
    model: type[ModelT],
    row_id: UUID,
    expected: str | Iterable[str],
    status_column: str = "status",
    **values: Any,
) -> bool:
    """UPDATE ... WHERE id = :id AND <status_column> IN (:expected).

    Returns True when this caller won the transition. Two concurrent callers
    can never both see True for the same expected status.
    """
    expected_statuses = (expected,) if isinstance(expected, str) else tuple(expected)
    column = getattr(model, status_column)
    result = await db.execute(
        update(model)
        .where(model.id == row_id, column.in_(expected_statuses))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    won = result.rowcount == 1
    if not won:
        logger.debug(
            f"compare_and_set lost: {model.__tablename__} id={row_id} "
            f"expected={expected_statuses}"
        )
    return won


async def get_for_update(db: AsyncSession, model: type[ModelT], row_id: UUID) -> ModelT | None:
    """SELECT ... FOR UPDATE, refreshing any stale copy in the identity map."""
    result = await db.execute(
        select(model)
        .where(model.id == row_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reload(db: AsyncSession, model: type[ModelT], row_id: UUID) -> ModelT | None:
    """Fresh read that overwrites the identity map copy."""
    result = await db.execute(
        select(model).where(model.id == row_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def end_transaction(db: AsyncSession) -> None:
    """Commit before a slow gateway call so no locks are held across it."""
    await db.commit()


def is_unique_violation(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message
