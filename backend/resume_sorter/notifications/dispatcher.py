"""
Notification Dispatcher — one customer email per confirmed ledger increment

Decision table (decide() is pure; dispatch() performs the single send):

  ┌────────────────────────────────────────────┬──────────────┐
  │ condition (checked in order)               │ kind         │
  ├────────────────────────────────────────────┼──────────────┤
  │ ledger did not confirm an increment        │ none         │
  │ customer not matched                       │ none         │
  │ customer billing-blocked                   │ none         │
  │ category is not RESUME                     │ none         │
  │ no report address                          │ none         │
  │ usable (finite) score                      │ scored       │
  │ receipts disabled (SEND_RECEIPT_ON_SKIP)   │ none         │
  │ otherwise                                  │ receipt      │
  └────────────────────────────────────────────┴──────────────┘

Delivery policy: exactly one attempt. A failed send is logged and swallowed,
never retried, because a retry could produce a second customer-visible email
for a document that was only counted once.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from resume_sorter.core.config import settings
from resume_sorter.processing.classifier import DocumentCategory

if TYPE_CHECKING:
    from resume_sorter.services.intake import PipelineResult

logger = logging.getLogger(__name__)

MAX_BULLETS = 4


# ---------------------------------------------------------------------------
# Sender interface
# ---------------------------------------------------------------------------

class NotificationError(Exception):
    """The notification channel rejected or failed the send."""


class NotificationSender(ABC):
    """Single outbound channel for customer-visible messages."""

    @abstractmethod
    async def send(self, to: str, subject: str, text: str) -> None:
        """Deliver one plain-text message. Raises NotificationError on failure."""


class ResendEmailSender(NotificationSender):
    """POST /emails on the Resend REST API."""

    def __init__(
        self,
        api_key:     str | None = None,
        sender:      str | None = None,
        api_base:    str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout:     float = 15.0,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.resend_api_key
        self._from = sender or settings.email_from
        self._base = (api_base or settings.resend_api_base).rstrip("/")
        self._client = http_client
        self._timeout = timeout

    async def send(self, to: str, subject: str, text: str) -> None:
        if not self._api_key:
            raise NotificationError("RESEND_API_KEY is not configured")

        payload = {"from": self._from, "to": [to], "subject": subject, "text": text}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            if self._client is not None:
                resp = await self._client.post(f"{self._base}/emails", json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(f"{self._base}/emails", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationError(f"Resend request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise NotificationError(f"Resend returned {resp.status_code}: {resp.text[:200]}")


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def _format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else f"{score:g}"


def build_scored_message(
    *,
    score:      float,
    summary:    str,
    strengths:  tuple[str, ...] | list[str],
    weaknesses: tuple[str, ...] | list[str],
    filename:   str,
    reference:  str,
    brand_name: str | None = None,
) -> tuple[str, str]:
    """(subject, body) for a scored resume."""
    brand = brand_name or settings.brand_name
    subject = f"Resume Score: {_format_score(score)}/100"

    lines: list[str] = [
        "Your resume has been successfully analyzed.",
        "",
        f"Overall Score: {_format_score(score)}/100",
    ]
    if summary:
        lines += ["", "Summary:", summary]
    if strengths:
        lines += ["", "Key Strengths:"] + [f"• {s}" for s in list(strengths)[:MAX_BULLETS]]
    if weaknesses:
        lines += ["", "Areas for Improvement:"] + [f"• {w}" for w in list(weaknesses)[:MAX_BULLETS]]
    lines += [
        "",
        f"File: {filename}",
        f"Reference ID: {reference}",
        "",
        f"Thank you for using {brand} Resume Scoring.",
    ]
    return subject, "\n".join(lines)


def build_receipt_message(*, filename: str, reference: str) -> tuple[str, str]:
    subject = "Resume received"
    body = "\n".join([
        "We received your resume and it is being processed.",
        "",
        f"File: {filename}",
        f"Reference ID: {reference}",
        "",
        "If you have any questions, reply to this email.",
    ])
    return subject, body


# ---------------------------------------------------------------------------
# Event / outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NotificationEvent:
    kind:    str                 # none | receipt | scored
    to:      str | None = None
    subject: str | None = None
    body:    str | None = None
    reason:  str | None = None   # set when kind == "none"

    @property
    def should_send(self) -> bool:
        return self.kind != "none"

    @classmethod
    def none(cls, reason: str) -> "NotificationEvent":
        return cls(kind="none", reason=reason)


@dataclass(frozen=True)
class NotificationOutcome:
    kind:  str
    sent:  bool
    to:    str | None = None
    reason: str | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "kind":   self.kind,
            "sent":   self.sent,
            "to":     self.to,
            "reason": self.reason,
            "error":  self.error,
        }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class NotificationDispatcher:

    def __init__(
        self,
        sender:               NotificationSender,
        send_receipt_on_skip: bool | None = None,
        brand_name:           str | None = None,
    ) -> None:
        self._sender = sender
        self._send_receipt = (
            settings.send_receipt_on_skip if send_receipt_on_skip is None else send_receipt_on_skip
        )
        self._brand = brand_name or settings.brand_name

    def decide(self, result: "PipelineResult") -> NotificationEvent:
        if not result.ledger.confirmed_increment:
            return NotificationEvent.none("no_confirmed_increment")
        if not result.match_found:
            return NotificationEvent.none("customer_not_matched")
        if result.blocked:
            return NotificationEvent.none("billing_block")
        if result.category != DocumentCategory.RESUME:
            return NotificationEvent.none("non_resume")

        to = result.report_to
        if not to:
            return NotificationEvent.none("missing_report_address")

        reference = result.storage_key or result.token
        scoring = result.scoring
        score = scoring.usable_score

        if score is not None:
            subject, body = build_scored_message(
                score=score,
                summary=scoring.summary,
                strengths=scoring.strengths,
                weaknesses=scoring.weaknesses,
                filename=result.filename,
                reference=reference,
                brand_name=self._brand,
            )
            return NotificationEvent(kind="scored", to=to, subject=subject, body=body)

        if not self._send_receipt:
            return NotificationEvent.none("receipt_disabled")

        subject, body = build_receipt_message(filename=result.filename, reference=reference)
        return NotificationEvent(kind="receipt", to=to, subject=subject, body=body)

    async def dispatch(self, result: "PipelineResult") -> NotificationOutcome:
        """Decide and make exactly one send attempt. Never raises."""
        event = self.decide(result)
        if not event.should_send:
            logger.debug("Notification skipped | reason=%s", event.reason)
            return NotificationOutcome(kind="none", sent=False, reason=event.reason)

        try:
            await self._sender.send(event.to, event.subject, event.body)
        except Exception as exc:
            logger.warning(
                "Notification failed (non-fatal) | kind=%s to=%s error=%s",
                event.kind, event.to, exc,
            )
            return NotificationOutcome(kind=event.kind, sent=False, to=event.to, error=str(exc))

        logger.info(
            "Notification sent | kind=%s to=%s customer=%s",
            event.kind, event.to, result.customer_id,
        )
        return NotificationOutcome(kind=event.kind, sent=True, to=event.to)
