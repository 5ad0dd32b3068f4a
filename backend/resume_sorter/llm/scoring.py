"""
Scoring Gateway — AI resume scoring behind a gate

  ┌──────────────────────────────────────────────────────┐
  │ gate_scoring()     pure, ordered skip reasons        │
  │   billing_block → non_resume → too_short →           │
  │   too_large → idempotent_skip                        │
  │       │ (no skip)                                    │
  │       ▼                                              │
  │ ScoringGateway.score(text, rubric)                   │
  │   ChatOpenAI.ainvoke ─▶ JSON parse ─▶ ScoringResult  │
  └──────────────────────────────────────────────────────┘

score() never raises. Upstream failures become tagged results:
    RateLimitError       → quota_exceeded
    AuthenticationError  → bad_api_key
    anything else        → openai_error
    non-JSON response    → parse_failed (raw text kept)

Rubric handling: the chat API takes a single prompt, so the tenant rubric
is prepended to the resume text as an instruction block.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from resume_sorter.core.config import settings
from resume_sorter.processing.classifier import DocumentCategory

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a resume screening assistant.\n\n"
    "Return JSON only in this format:\n"
    "{\n"
    '  "score": number (0-100),\n'
    '  "summary": string,\n'
    '  "strengths": string[],\n'
    '  "weaknesses": string[]\n'
    "}"
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class SkipReason(str, Enum):
    BILLING_BLOCK   = "billing_block"
    NON_RESUME      = "non_resume"
    TOO_SHORT       = "too_short"
    TOO_LARGE       = "too_large"
    IDEMPOTENT_SKIP = "idempotent_skip"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoringResult:
    """Exactly one of: a score payload, a skip, or an error."""
    score:      float | None    = None
    summary:    str             = ""
    strengths:  tuple[str, ...] = ()
    weaknesses: tuple[str, ...] = ()
    skipped:    bool            = False
    reason:     SkipReason | None = None
    error:      str | None      = None
    message:    str | None      = None
    raw:        str | None      = None
    extra:      dict            = field(default_factory=dict)

    @property
    def usable_score(self) -> float | None:
        if self.skipped or self.error or self.score is None:
            return None
        return self.score if math.isfinite(self.score) else None

    @classmethod
    def skip(cls, reason: SkipReason, **extra: Any) -> "ScoringResult":
        return cls(skipped=True, reason=reason, extra=extra)

    @classmethod
    def failure(cls, error: str, message: str | None = None, raw: str | None = None) -> "ScoringResult":
        return cls(error=error, message=message, raw=raw)

    def as_dict(self) -> dict:
        if self.skipped:
            return {"skipped": True, "reason": self.reason.value if self.reason else None, **self.extra}
        if self.error:
            out: dict = {"error": self.error}
            if self.message:
                out["message"] = self.message
            if self.raw is not None:
                out["raw"] = self.raw
            return out
        return {
            "score":      self.score,
            "summary":    self.summary,
            "strengths":  list(self.strengths),
            "weaknesses": list(self.weaknesses),
        }


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

def gate_scoring(
    *,
    blocked:          bool,
    category:         DocumentCategory,
    text:             str,
    truncated:        bool,
    already_scored:   bool = False,
    min_chars:        int | None = None,
    max_chars:        int | None = None,
) -> SkipReason | None:
    """First matching skip reason, or None when the document should be scored."""
    min_chars = settings.min_score_chars if min_chars is None else min_chars
    max_chars = settings.max_openai_chars if max_chars is None else max_chars
    length = len(text or "")

    if blocked:
        return SkipReason.BILLING_BLOCK
    if category != DocumentCategory.RESUME:
        return SkipReason.NON_RESUME
    if length < min_chars:
        return SkipReason.TOO_SHORT
    if truncated or length > max_chars:
        return SkipReason.TOO_LARGE
    if already_scored:
        return SkipReason.IDEMPOTENT_SKIP
    return None


def merge_rubric(text: str, rubric: Any | None) -> str:
    if rubric is None:
        return text
    block = rubric if isinstance(rubric, str) else json.dumps(rubric, indent=2)
    return f"RUBRIC (customer scoring criteria):\n{block}\n\n{text}"


def parse_score_payload(raw: str) -> ScoringResult:
    cleaned = _FENCE_RE.sub("", (raw or "").strip())
    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError):
        return ScoringResult.failure("parse_failed", raw=raw)
    if not isinstance(data, dict):
        return ScoringResult.failure("parse_failed", raw=raw)

    try:
        score = float(data.get("score"))
    except (TypeError, ValueError):
        score = None

    return ScoringResult(
        score=score,
        summary=str(data.get("summary") or ""),
        strengths=tuple(str(s) for s in data.get("strengths") or [] if s),
        weaknesses=tuple(str(w) for w in data.get("weaknesses") or [] if w),
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ScoringGateway:

    def __init__(
        self,
        llm:     BaseChatModel | None = None,
        timeout: float | None = None,
    ) -> None:
        self._llm = llm
        self._timeout = timeout or settings.openai_timeout_seconds

    def _get_llm(self) -> BaseChatModel | None:
        if self._llm is None and settings.openai_api_key:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=settings.openai_model,
                temperature=settings.openai_temperature,
                api_key=settings.openai_api_key,
                max_retries=0,
            )
        return self._llm

    @staticmethod
    def build_messages(text: str, rubric: Any | None = None) -> list[BaseMessage]:
        body = merge_rubric(text, rubric)
        return [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=f'Resume:\n"""\n{body}\n"""'),
        ]

    async def score(self, text: str, rubric: Any | None = None) -> ScoringResult:
        llm = self._get_llm()
        if llm is None:
            logger.warning("Scoring skipped: OPENAI_API_KEY is not configured")
            return ScoringResult.failure("not_configured", "OPENAI_API_KEY missing")

        messages = self.build_messages(text, rubric)
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(llm.ainvoke(messages), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Scoring timed out after %.0fs", self._timeout)
            return ScoringResult.failure("openai_error", f"timed out after {self._timeout}s")
        except Exception as exc:
            code = _map_upstream_error(exc)
            logger.warning("Scoring failed | error=%s type=%s detail=%s", code, type(exc).__name__, exc)
            return ScoringResult.failure(code, str(exc))

        raw = response.content if isinstance(response.content, str) else json.dumps(response.content)
        result = parse_score_payload(raw)
        logger.info(
            "Scored | chars=%d rubric=%s score=%s error=%s latency_ms=%.1f",
            len(text), rubric is not None, result.score, result.error,
            (time.perf_counter() - t0) * 1000,
        )
        return result


def _map_upstream_error(exc: Exception) -> str:
    from openai import AuthenticationError, RateLimitError

    if isinstance(exc, RateLimitError) or getattr(exc, "status_code", None) == 429:
        return "quota_exceeded"
    if isinstance(exc, AuthenticationError) or getattr(exc, "status_code", None) == 401:
        return "bad_api_key"
    return "openai_error"
