"""
Keyword-signal document classifier.

Pure function over extracted text: no I/O, no state. Each keyword counts
once if it appears anywhere in the lower-cased text (substring presence,
not occurrences). Rule order below resolves mixed-signal documents and
must not be reordered.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

MIN_LETTERS = 80

RESUME_STRONG: tuple[str, ...] = (
    "professional summary",
    "work experience",
    "employment history",
    "experience",
    "education",
    "skills",
    "certifications",
    "certification",
    "projects",
    "objective",
    "curriculum vitae",
    "resume",
    "linkedin",
)

RESUME_WEAK: tuple[str, ...] = (
    "responsibilities",
    "achievements",
    "accomplishments",
    "references",
    "technical skills",
    "core competencies",
    "profile",
    "summary",
    "high school",
    "university",
    "college",
    "bachelor",
    "diploma",
)

NON_RESUME_STRONG: tuple[str, ...] = (
    "invoice",
    "amount due",
    "subtotal",
    "total due",
    "payment",
    "bill to",
    "ship to",
    "purchase order",
    "po number",
    "statement of account",
    "terms and conditions",
)

_LOWER_LETTER_RE = re.compile(r"[a-z]")


class DocumentCategory(str, Enum):
    RESUME     = "RESUME"
    NON_RESUME = "NON_RESUME"


@dataclass(frozen=True)
class ClassificationSignals:
    letters:          int
    has_strong:       bool
    resume_score:     int
    non_resume_score: int


def _count_present(text: str, keys: tuple[str, ...]) -> int:
    return sum(1 for k in keys if k in text)


def compute_signals(text: str) -> ClassificationSignals:
    lowered = (text or "").lower()
    strong = _count_present(lowered, RESUME_STRONG)
    return ClassificationSignals(
        letters=len(_LOWER_LETTER_RE.findall(lowered)),
        has_strong=strong > 0,
        resume_score=strong * 3 + _count_present(lowered, RESUME_WEAK),
        non_resume_score=_count_present(lowered, NON_RESUME_STRONG) * 3,
    )


def classify(text: str) -> DocumentCategory:
    s = compute_signals(text)
    if s.letters < MIN_LETTERS:
        return DocumentCategory.NON_RESUME

    if s.has_strong and s.non_resume_score < s.resume_score:
        return DocumentCategory.RESUME
    if s.resume_score >= 3 and s.non_resume_score <= s.resume_score:
        return DocumentCategory.RESUME
    if s.non_resume_score >= 3 and s.non_resume_score > s.resume_score:
        return DocumentCategory.NON_RESUME
    return DocumentCategory.NON_RESUME
