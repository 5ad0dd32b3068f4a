"""
Ledger Engine — idempotent daily tally on a non-transactional sheet

Each tenant owns a ledger spreadsheet with one row per tenant-local day:

    A date │ B resumesProcessed │ C notes │ D customerId │ E r2Key │
    F resumeFile │ G tokens │ H lastScore

Data window: A2:H1000  →  sheet row number = data index + 2

Per-document state machine (apply):

  ┌──────────────┐   row for today?   ┌──────────────┐
  │ ensure row   │── no ─────────────▶│ append zero  │──▶ re-read
  └──────┬───────┘                    └──────────────┘
         │ (row_number, count, notes)
         ▼
  ┌──────────────┐  token ∈ G ?  yes ─▶ duplicate: return unchanged,
  │ token check  │                     should_increment = False, NO writes
  └──────┬───────┘  read error ───────▶ treated as "not present"
         ▼
  ┌──────────────┐
  │ write B,C,D  │  independent single-cell writes
  │ (+E,F,G,H)   │  RESUME + storage key only; H only for a finite score
  └──────────────┘

Invariants:
  - G (token set) is the only source of truth for "already counted today".
    A token present in G is never counted again, across retries and restarts.
  - B only grows within a day and only for non-duplicate RESUME documents.
  - Partial application is tolerated. A later successful write corrects the
    notes; nothing is rolled back.

Concurrency (process-local):
  - in_flight(customer, day, token) serializes deliveries of the same
    document, so the second one sees the first one's token in G.
  - LEDGER_SERIALIZE_PER_TENANT (default on) serializes apply() per
    customer. Without it two different documents may both append a row, or
    both read count=N and lose an increment.
  - token_exists() is read-only: it never creates today's row.
Across processes the sheet has no transactions, so the same races remain.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote
from zoneinfo import ZoneInfo

from resume_sorter.core.config import settings
from resume_sorter.directory.sheets import GoogleSheetsClient, SheetsError
from resume_sorter.processing.classifier import DocumentCategory

logger = logging.getLogger(__name__)

DATA_RANGE   = "A2:H1000"
APPEND_RANGE = "A:H"
FIRST_DATA_ROW = 2

LEGACY_NOTES: frozenset[str] = frozenset({"inbound-file:NON_RESUME"})


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def today_in_timezone(tz_name: str | None = None, now: datetime | None = None) -> str:
    """ISO date (YYYY-MM-DD) of `now` in the tenant time zone."""
    tz = ZoneInfo(tz_name or settings.timezone)
    moment = now or datetime.now(timezone.utc)
    return moment.astimezone(tz).date().isoformat()


def split_csv(cell: str) -> list[str]:
    return [p.strip() for p in (cell or "").split(",") if p.strip()]


def clean_notes(notes: str) -> str:
    """Drop storage-pointer parts ("r2:...") and legacy markers."""
    parts = [
        p for p in split_csv(notes)
        if not p.lower().startswith("r2:") and p not in LEGACY_NOTES
    ]
    return ", ".join(parts)


def append_note(existing: str, note: str) -> str:
    """Append `note` unless an identical comma-separated part exists."""
    existing = (existing or "").strip()
    if not existing:
        return note
    if note in split_csv(existing):
        return existing
    return f"{existing}, {note}"


def merge_tokens(existing_cell: str, *wanted: str) -> str:
    tokens = split_csv(existing_cell)
    for w in wanted:
        if w and w not in tokens:
            tokens.append(w)
    return ", ".join(tokens)


def parse_count(cell: str) -> int:
    try:
        value = float(cell) if cell else 0.0
    except ValueError:
        return 0
    return int(value) if math.isfinite(value) else 0


def parse_score(cell: str) -> float | None:
    try:
        value = float(cell)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def build_public_url(key: str) -> str:
    """Public link for a stored object, or "" unless explicitly enabled."""
    if not settings.r2_public_links_enabled or not settings.r2_public_base_url or not key:
        return ""
    return f"{settings.r2_public_base_url.rstrip('/')}/{quote(key, safe='/')}"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerRow:
    row_number: int
    count:      int
    notes:      str


@dataclass(frozen=True)
class LedgerDaySnapshot:
    """Read-only view of today's row, used by the nightly report."""
    count:       int
    last_score:  float | None
    r2_key:      str
    tokens:      str
    resume_link: str


@dataclass(frozen=True)
class LedgerOutcome:
    today:            str
    next_count:       int  | None = None
    next_notes:       str  | None = None
    should_increment: bool = False
    skipped:          bool = False
    reason:           str  | None = None
    error:            str  | None = None
    message:          str  | None = None

    @property
    def applied(self) -> bool:
        """The ledger was read (and, unless a duplicate, written) for this document."""
        return not self.skipped and self.error is None

    @property
    def confirmed_increment(self) -> bool:
        return self.should_increment and self.applied

    @classmethod
    def skip(cls, today: str, reason: str) -> "LedgerOutcome":
        return cls(today=today, skipped=True, reason=reason)

    @classmethod
    def failure(cls, today: str, message: str) -> "LedgerOutcome":
        return cls(today=today, error="tally_failed", message=message)

    def as_dict(self) -> dict:
        return {
            "applied":          self.applied,
            "today":            self.today,
            "next_count":       self.next_count,
            "next_notes":       self.next_notes,
            "should_increment": self.should_increment,
            "skipped":          self.skipped,
            "reason":           self.reason,
            "error":            self.error,
            "message":          self.message,
        }


# ---------------------------------------------------------------------------
# Keyed lock registry
# ---------------------------------------------------------------------------

@dataclass
class _KeyedLock:
    lock:    asyncio.Lock
    holders: int = 0


class KeyedLocks:
    """
    One asyncio.Lock per key, created on first use and dropped once no task
    holds or waits for it. Process-local only.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _KeyedLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: str):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock(asyncio.Lock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                self._locks.pop(key, None)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class LedgerEngine:

    def __init__(
        self,
        sheets:               GoogleSheetsClient,
        serialize_per_tenant: bool | None = None,
    ) -> None:
        self._sheets = sheets
        serialize = settings.ledger_serialize_per_tenant if serialize_per_tenant is None else serialize_per_tenant
        self._tenant_locks = KeyedLocks() if serialize else None
        self._document_locks = KeyedLocks()

    def in_flight(self, customer_id: str, today: str, token: str):
        """
        Hold across pre-check, scoring and apply for one document so an
        overlapping delivery of the same bytes waits and then sees the token.
        """
        return self._document_locks.hold(f"{customer_id}|{today}|{token}")

    # ------------------------------------------------------------------
    # Row lookup
    # ------------------------------------------------------------------

    async def ensure_today_row(self, sheet_id: str, customer_id: str, today: str) -> LedgerRow:
        """Find today's row, appending a zero row when there is none."""
        rows = await self._sheets.get_values(sheet_id, DATA_RANGE)
        idx = _find_day(rows, today)
        if idx is not None:
            row = rows[idx]
            return LedgerRow(
                row_number=idx + FIRST_DATA_ROW,
                count=parse_count(_cell(row, 1)),
                notes=_cell(row, 2),
            )

        await self._sheets.append_values(
            sheet_id, APPEND_RANGE, [[today, 0, "", customer_id, "", "", "", ""]],
            value_input_option="RAW",
        )
        logger.info("Ledger row appended | sheet=%s customer=%s day=%s", sheet_id, customer_id, today)

        rows = await self._sheets.get_values(sheet_id, DATA_RANGE)
        idx = _find_day(rows, today)
        if idx is None:
            # Eventual consistency: the append may not be visible yet.
            idx = max(len(rows) - 1, 0)
        return LedgerRow(row_number=idx + FIRST_DATA_ROW, count=0, notes="")

    async def read_tokens(self, sheet_id: str, row_number: int) -> str:
        values = await self._sheets.get_values(sheet_id, f"G{row_number}")
        return _cell(values[0], 0) if values else ""

    async def token_exists(self, sheet_id: str, customer_id: str, token: str, today: str) -> bool:
        """
        True if `token` is already in today's token set. Read-only: no row
        for today means nothing was counted yet.
        Raises SheetsError on failure; callers decide how to degrade.
        """
        rows = await self._sheets.get_values(sheet_id, DATA_RANGE)
        idx = _find_day(rows, today)
        if idx is None:
            return False
        return token in split_csv(_cell(rows[idx], 6))

    async def read_day(self, sheet_id: str, today: str) -> LedgerDaySnapshot | None:
        rows = await self._sheets.get_values(sheet_id, DATA_RANGE)
        idx = _find_day(rows, today)
        if idx is None:
            return None
        row = rows[idx]
        return LedgerDaySnapshot(
            count=parse_count(_cell(row, 1)),
            last_score=parse_score(_cell(row, 7)),
            r2_key=_cell(row, 4),
            tokens=_cell(row, 6),
            resume_link=_cell(row, 5),
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(
        self,
        *,
        sheet_id:    str,
        customer_id: str,
        source:      str,
        category:    DocumentCategory,
        token:       str,
        storage_key: str | None = None,
        score:       float | None = None,
        today:       str | None = None,
    ) -> LedgerOutcome:
        """
        Run the read-modify-write for one document. Never raises; ledger store
        failures come back as LedgerOutcome(error="tally_failed").
        """
        today = today or today_in_timezone()
        lock = self._tenant_locks.hold(customer_id) if self._tenant_locks else contextlib.nullcontext()

        async with lock:
            try:
                return await self._apply_unlocked(
                    sheet_id=sheet_id,
                    customer_id=customer_id,
                    source=source,
                    category=category,
                    token=token,
                    storage_key=storage_key,
                    score=score,
                    today=today,
                )
            except SheetsError as exc:
                logger.error(
                    "Ledger apply failed | sheet=%s customer=%s day=%s status=%s error=%s",
                    sheet_id, customer_id, today, exc.status_code, exc,
                )
                return LedgerOutcome.failure(today, str(exc))

    async def _apply_unlocked(
        self,
        *,
        sheet_id:    str,
        customer_id: str,
        source:      str,
        category:    DocumentCategory,
        token:       str,
        storage_key: str | None,
        score:       float | None,
        today:       str,
    ) -> LedgerOutcome:
        row = await self.ensure_today_row(sheet_id, customer_id, today)
        is_resume = category == DocumentCategory.RESUME
        next_notes = append_note(clean_notes(row.notes), f"{source}:{category.value}")

        if is_resume and token:
            try:
                present = token in split_csv(await self.read_tokens(sheet_id, row.row_number))
            except SheetsError as exc:
                # Degrade to "not a duplicate": a ledger hiccup must not stop counting.
                logger.warning(
                    "Ledger token check failed, assuming new | sheet=%s row=%d error=%s",
                    sheet_id, row.row_number, exc,
                )
                present = False
            if present:
                logger.info(
                    "Ledger duplicate skip | customer=%s day=%s token=%s",
                    customer_id, today, token,
                )
                return LedgerOutcome(
                    today=today,
                    next_count=row.count,
                    next_notes=next_notes,
                    should_increment=False,
                )

        next_count = row.count + 1 if is_resume else row.count
        n = row.row_number

        await self._write(sheet_id, f"B{n}", next_count)
        await self._write(sheet_id, f"C{n}", next_notes)
        await self._write(sheet_id, f"D{n}", customer_id)

        if is_resume and storage_key:
            await self._write(sheet_id, f"E{n}", storage_key)

            url = build_public_url(storage_key)
            link = f'=HYPERLINK("{url}","resume file")' if url else ""
            await self._write(sheet_id, f"F{n}", link, value_input_option="USER_ENTERED")

            # Re-read right before writing to narrow the lost-update window.
            current = await self.read_tokens(sheet_id, n)
            await self._write(sheet_id, f"G{n}", merge_tokens(current, token, f"r2:{storage_key}"))

            if score is not None and math.isfinite(score):
                await self._write(sheet_id, f"H{n}", score)

        logger.info(
            "Ledger applied | customer=%s day=%s row=%d count=%d increment=%s",
            customer_id, today, n, next_count, is_resume,
        )
        return LedgerOutcome(
            today=today,
            next_count=next_count,
            next_notes=next_notes,
            should_increment=is_resume,
        )

    async def _write(self, sheet_id: str, cell: str, value, value_input_option: str = "RAW") -> None:
        await self._sheets.update_values(sheet_id, cell, [[value]], value_input_option=value_input_option)


def _cell(row: list[str], i: int) -> str:
    return row[i].strip() if i < len(row) and row[i] is not None else ""


def _find_day(rows: list[list[str]], today: str) -> int | None:
    for i, row in enumerate(rows):
        if _cell(row, 0) == today:
            return i
    return None
