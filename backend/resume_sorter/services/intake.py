"""
Intake Pipeline

Orchestrates one inbound document from bytes to bookkeeping:
  1. Extract text (never raises; empty on parser failure)
  2. Classify RESUME / NON_RESUME (empty text → NON_RESUME)
  3. Resolve the tenant by intake address (directory outage → unresolved)
  4. Billing gate (only a resolved tenant can be blocked)
  5. Load the tenant rubric (best-effort)
  6. Idempotency pre-check against today's token set, so a re-delivered
     resume is not sent to the scorer a second time. Steps 6-8 run under
     LedgerEngine.in_flight() for (tenant, day, token).
  7. Scoring gate, then score
  8. Ledger apply (or a tagged ledger skip)
  9. Audit row
 10. Notification (hard-gated on a confirmed ledger increment)

Failure isolation:
  - Only input rejection (handled by the routes, before this class runs)
    changes the HTTP status. Every later failure is a tagged field on the
    PipelineResult.
  - Scoring failures never block counting. Ledger failures suppress the
    notification. Audit and notification failures are swallowed.
  - Nothing after the ledger step can cause a second increment on retry:
    the token written to column G is the durable idempotency record.
"""

from __future__ import annotations

import contextlib
import dataclasses
import hashlib
import logging
import time
from dataclasses import dataclass
from functools import cached_property
from typing import Any

from resume_sorter.directory.billing import BillingDecision, evaluate_billing_status
from resume_sorter.directory.customers import CustomerDirectory, CustomerRecord
from resume_sorter.directory.sheets import SheetsError
from resume_sorter.ledger.engine import LedgerEngine, LedgerOutcome, today_in_timezone
from resume_sorter.llm.scoring import ScoringGateway, ScoringResult, SkipReason, gate_scoring
from resume_sorter.notifications.dispatcher import NotificationDispatcher, NotificationOutcome
from resume_sorter.processing.classifier import DocumentCategory, classify
from resume_sorter.processing.extractor import TextExtractor
from resume_sorter.services.audit import AuditSink
from resume_sorter.services.rubrics import RubricStore

logger = logging.getLogger(__name__)

TEXT_PREVIEW_CHARS = 400


# ---------------------------------------------------------------------------
# Input / output values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InboundDocument:
    """One submitted file (or email body) for a single pipeline run."""
    data:           bytes
    filename:       str
    to_email:       str | None
    source:         str               # inbound-file | inbound-r2 | resend-inbound
    storage_key:    str | None = None
    storage_bucket: str | None = None

    @cached_property
    def content_hash(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @property
    def idempotency_token(self) -> str:
        return f"hash:{self.content_hash}"


@dataclass(frozen=True)
class PipelineResult:
    """Immutable terminal value of one run; consumed by audit, notification and HTTP."""
    source:          str
    filename:        str
    to_email:        str | None
    token:           str
    category:        DocumentCategory
    extracted_chars: int
    truncated:       bool
    text_preview:    str
    customer:        CustomerRecord | None
    billing:         BillingDecision
    scoring:         ScoringResult
    ledger:          LedgerOutcome
    storage_key:     str | None = None
    storage_bucket:  str | None = None
    notification:    NotificationOutcome | None = None
    audited:         bool = False

    @property
    def match_found(self) -> bool:
        return self.customer is not None

    @property
    def customer_id(self) -> str | None:
        return self.customer.customer_id if self.customer else None

    @property
    def billing_status(self) -> str | None:
        return self.customer.billing_status if self.customer else None

    @property
    def blocked(self) -> bool:
        return self.match_found and not self.billing.allowed

    @property
    def blocked_reason(self) -> str | None:
        return self.billing.reason if self.blocked else None

    @property
    def report_to(self) -> str | None:
        """Report address, falling back to the intake address the document was sent to."""
        if self.customer and self.customer.report_to_email:
            return self.customer.report_to_email
        return self.to_email or None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok":              True,
            "source":          self.source,
            "filename":        self.filename,
            "to_email":        self.to_email,
            "customer_id":     self.customer_id,
            "match_found":     self.match_found,
            "doc_type":        self.category.value,
            "extracted_chars": self.extracted_chars,
            "truncated":       self.truncated,
            "text_preview":    self.text_preview,
            "billing_status":  self.billing_status,
            "blocked":         self.blocked,
            "blocked_reason":  self.blocked_reason,
            "r2": (
                {"bucket": self.storage_bucket, "key": self.storage_key}
                if self.storage_key else None
            ),
            "ai":           self.scoring.as_dict(),
            "tally":        self.ledger.as_dict(),
            "notification": self.notification.as_dict() if self.notification else None,
            "audited":      self.audited,
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IntakePipeline:

    def __init__(
        self,
        extractor:  TextExtractor,
        directory:  CustomerDirectory,
        scorer:     ScoringGateway,
        ledger:     LedgerEngine,
        dispatcher: NotificationDispatcher,
        audit:      AuditSink,
        rubrics:    RubricStore | None = None,
    ) -> None:
        self._extractor = extractor
        self._directory = directory
        self._scorer = scorer
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._audit = audit
        self._rubrics = rubrics

    async def process(self, doc: InboundDocument) -> PipelineResult:
        t0 = time.perf_counter()
        token = doc.idempotency_token
        today = today_in_timezone()

        # ------------------------------------------------------------------
        # Extract + classify
        # ------------------------------------------------------------------
        extraction = await self._extractor.extract(doc.filename, doc.data)
        text = extraction.text
        category = classify(text) if text.strip() else DocumentCategory.NON_RESUME

        # ------------------------------------------------------------------
        # Resolve + billing
        # ------------------------------------------------------------------
        customer = await self._directory.resolve_by_intake_email(doc.to_email)
        billing = (
            evaluate_billing_status(customer.billing_status)
            if customer else BillingDecision(allowed=True)
        )
        blocked = customer is not None and not billing.allowed
        sheet_id = customer.current_sheet_id if customer else ""

        if customer is None:
            logger.info("Intake unresolved | to=%s file=%s", doc.to_email, doc.filename)
        elif blocked:
            logger.info(
                "Intake billing block | customer=%s status=%s",
                customer.customer_id, customer.billing_status,
            )

        # ------------------------------------------------------------------
        # Pre-check → score → ledger, held per (tenant, day, token) so an
        # overlapping delivery of the same bytes waits for this one
        # ------------------------------------------------------------------
        tallied = customer is not None and bool(sheet_id) and not blocked
        guard = (
            self._ledger.in_flight(customer.customer_id, today, token)
            if tallied else contextlib.nullcontext()
        )
        async with guard:
            already_scored = False
            pre_gate = gate_scoring(
                blocked=blocked, category=category, text=text, truncated=extraction.truncated,
            )
            if pre_gate is None and tallied:
                already_scored = await self._token_already_counted(sheet_id, customer.customer_id, token, today)

            skip_reason = gate_scoring(
                blocked=blocked,
                category=category,
                text=text,
                truncated=extraction.truncated,
                already_scored=already_scored,
            )
            if skip_reason is not None:
                scoring = ScoringResult.skip(skip_reason, **self._skip_extra(skip_reason, extraction, text))
            else:
                rubric = await self._load_rubric(customer)
                scoring = await self._scorer.score(text, rubric)

            if blocked:
                ledger = LedgerOutcome.skip(today, "billing_block")
            elif already_scored:
                ledger = LedgerOutcome.skip(today, SkipReason.IDEMPOTENT_SKIP.value)
            elif not tallied:
                ledger = LedgerOutcome.skip(today, "no_sheet")
            else:
                ledger = await self._ledger.apply(
                    sheet_id=sheet_id,
                    customer_id=customer.customer_id,
                    source=doc.source,
                    category=category,
                    token=token,
                    storage_key=doc.storage_key,
                    score=scoring.usable_score,
                    today=today,
                )

        result = PipelineResult(
            source=doc.source,
            filename=doc.filename,
            to_email=doc.to_email,
            token=token,
            category=category,
            extracted_chars=extraction.char_count,
            truncated=extraction.truncated,
            text_preview=text[:TEXT_PREVIEW_CHARS],
            customer=customer,
            billing=billing,
            scoring=scoring,
            ledger=ledger,
            storage_key=doc.storage_key,
            storage_bucket=doc.storage_bucket,
        )

        # ------------------------------------------------------------------
        # Audit, then notify (both best-effort)
        # ------------------------------------------------------------------
        audited = await self._audit.record(result)
        notification = await self._dispatcher.dispatch(result)
        result = dataclasses.replace(result, notification=notification, audited=audited)

        logger.info(
            "Intake done | customer=%s category=%s score=%s increment=%s notify=%s latency_ms=%.1f",
            result.customer_id, category.value, scoring.usable_score,
            ledger.confirmed_increment, notification.kind if notification.sent else "none",
            (time.perf_counter() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _token_already_counted(self, sheet_id: str, customer_id: str, token: str, today: str) -> bool:
        try:
            return await self._ledger.token_exists(sheet_id, customer_id, token, today)
        except SheetsError as exc:
            logger.warning(
                "Idempotency pre-check failed (non-fatal), scoring anyway | customer=%s error=%s",
                customer_id, exc,
            )
            return False

    async def _load_rubric(self, customer: CustomerRecord | None) -> Any | None:
        if customer is None or self._rubrics is None:
            return None
        try:
            return await self._rubrics.get(customer.customer_id)
        except Exception as exc:
            logger.warning(
                "Rubric lookup failed (non-fatal) | customer=%s error=%s",
                customer.customer_id, exc,
            )
            return None

    @staticmethod
    def _skip_extra(reason: SkipReason, extraction, text: str) -> dict[str, Any]:
        if reason == SkipReason.TOO_SHORT:
            return {"chars": len(text)}
        if reason == SkipReason.TOO_LARGE:
            return {"chars": extraction.char_count, "truncated": extraction.truncated}
        return {}
