"""
Audit Sink — one inbound_docs row per processed document.

Runs after the ledger step for every outcome, including skips and upstream
failures. Best-effort: a database outage is logged and swallowed and never
changes the webhook response.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, AsyncContextManager, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from resume_sorter.db.session import get_session
from resume_sorter.models.audit import InboundDoc

if TYPE_CHECKING:
    from resume_sorter.services.intake import PipelineResult

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def build_audit_row(result: "PipelineResult") -> InboundDoc:
    customer_id = result.customer_id
    return InboundDoc(
        source=result.source,
        to_email=result.to_email,
        customer_id=customer_id,
        resolved_customer_id=customer_id,
        match_found=result.match_found,
        billing_status=result.billing_status,
        blocked_reason=result.blocked_reason,
        filename=result.filename,
        r2_bucket=result.storage_bucket,
        r2_key=result.storage_key,
        doc_type=result.category.value,
        extracted_chars=result.extracted_chars,
        text_preview=result.text_preview,
        ai_score=result.scoring.usable_score,
        ai_json=result.scoring.as_dict(),
    )


class AuditSink:

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    async def record(self, result: "PipelineResult") -> bool:
        """Insert the audit row. Returns False (never raises) on failure."""
        try:
            async with self._session_factory() as session:
                session.add(build_audit_row(result))
        except Exception as exc:
            logger.warning(
                "Audit insert failed (non-fatal) | customer=%s file=%s error=%s",
                result.customer_id, result.filename, exc,
            )
            return False

        logger.debug("Audit row written | customer=%s file=%s", result.customer_id, result.filename)
        return True
