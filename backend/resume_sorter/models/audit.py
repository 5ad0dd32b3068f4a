"""
SQLAlchemy ORM Models — Inbound Document Audit & Customer Rubrics

inbound_docs is append-only: the service only ever INSERTs. It is the
source of truth for "what happened to this document", because the HTTP
response of a webhook is advisory (the caller may have timed out).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# InboundDoc — inbound_docs
# ---------------------------------------------------------------------------

class InboundDoc(Base):
    """One row per processed document, written for every outcome."""

    __tablename__ = "inbound_docs"
    __table_args__ = (
        Index("idx_inbound_docs_customer_id", "customer_id"),
        Index("idx_inbound_docs_created_at",  "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    source:   Mapped[str]           = mapped_column(Text, nullable=False, comment="inbound-file | inbound-r2 | resend-inbound")
    to_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Resolution
    customer_id:          Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_customer_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    match_found:          Mapped[bool]          = mapped_column(Boolean, nullable=False, default=False)
    billing_status:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocked_reason:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Document
    filename:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    r2_bucket:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    r2_key:          Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    doc_type:        Mapped[str]           = mapped_column(Text, nullable=False)
    extracted_chars: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    text_preview:    Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="first 400 chars")

    # Scoring
    ai_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_json:  Mapped[Optional[dict]]  = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<InboundDoc id={self.id} customer={self.customer_id} "
            f"type={self.doc_type} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# CustomerRubric — customer_rubrics
# ---------------------------------------------------------------------------

class CustomerRubric(Base):
    __tablename__ = "customer_rubrics"

    customer_id: Mapped[str]  = mapped_column(Text, primary_key=True)
    rubric_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
    updated_at:  Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
