"""
Customer rubric storage (customer_rubrics, one JSONB row per tenant).

A rubric is free-form JSON scoring criteria that the scoring prompt
prepends to the resume text. Writes are upserts keyed by customer_id.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncContextManager, Callable

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from resume_sorter.db.session import get_session
from resume_sorter.models.audit import CustomerRubric

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class RubricStore:

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    async def upsert(self, customer_id: str, rubric: dict[str, Any]) -> None:
        stmt = pg_insert(CustomerRubric).values(customer_id=customer_id, rubric_json=rubric)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CustomerRubric.customer_id],
            set_={"rubric_json": stmt.excluded.rubric_json, "updated_at": func.now()},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
        logger.info("Rubric saved | customer=%s keys=%d", customer_id, len(rubric))

    async def get(self, customer_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CustomerRubric.rubric_json).where(CustomerRubric.customer_id == customer_id)
            )
            return result.scalar_one_or_none()
