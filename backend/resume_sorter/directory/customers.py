"""
Customer Directory — master sheet of tenants, cached in-process.

Master sheet layout (row 1 = headers, matched case-insensitively):

    customerId | companyName | companySlug | intakeEmail | reportToEmail |
    billingStatus | trialStartAt | trialEndAt | currentSheetId |
    currentSheetUrl | currentSheetStartAt | currentSheetEndAt | createdAt |
    stripeCustomerId | stripeSubscriptionId

Cache policy:
  Pull-through TTLCache (value + timestamp + TTL). Expiry or an explicit
  invalidate() forces a full re-read. Every directory write goes through
  update_customer_field(), which invalidates afterwards so a billing status
  change is visible on the next lookup, not after the TTL.

Resolution:
  Intake addresses are compared trimmed and case-insensitively. The list is
  scanned from the end, so when two rows share an address the most recently
  appended one wins.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from resume_sorter.core.config import settings
from resume_sorter.directory.sheets import GoogleSheetsClient, SheetsError, column_letter

logger = logging.getLogger(__name__)

T = TypeVar("T")

MASTER_HEADERS: tuple[str, ...] = (
    "customerId",
    "companyName",
    "companySlug",
    "intakeEmail",
    "reportToEmail",
    "billingStatus",
    "trialStartAt",
    "trialEndAt",
    "currentSheetId",
    "currentSheetUrl",
    "currentSheetStartAt",
    "currentSheetEndAt",
    "createdAt",
    "stripeCustomerId",
    "stripeSubscriptionId",
)


class DirectoryError(Exception):
    """The master sheet could not be read or written."""


class CustomerNotFoundError(DirectoryError):
    pass


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CustomerRecord:
    customer_id:            str
    company_name:           str = ""
    company_slug:           str = ""
    intake_email:           str = ""
    report_to_email:        str = ""
    billing_status:         str = ""
    trial_start_at:         str = ""
    trial_end_at:           str = ""
    current_sheet_id:       str = ""
    current_sheet_url:      str = ""
    current_sheet_start_at: str = ""
    current_sheet_end_at:   str = ""
    created_at:             str = ""
    stripe_customer_id:     str = ""
    stripe_subscription_id: str = ""

    @classmethod
    def from_row(cls, header_index: dict[str, int], row: list[str]) -> "CustomerRecord":
        def cell(header: str) -> str:
            i = header_index.get(header.lower(), -1)
            return row[i].strip() if 0 <= i < len(row) else ""

        return cls(
            customer_id=cell("customerId"),
            company_name=cell("companyName"),
            company_slug=cell("companySlug"),
            intake_email=cell("intakeEmail"),
            report_to_email=cell("reportToEmail"),
            billing_status=cell("billingStatus"),
            trial_start_at=cell("trialStartAt"),
            trial_end_at=cell("trialEndAt"),
            current_sheet_id=cell("currentSheetId"),
            current_sheet_url=cell("currentSheetUrl"),
            current_sheet_start_at=cell("currentSheetStartAt"),
            current_sheet_end_at=cell("currentSheetEndAt"),
            created_at=cell("createdAt"),
            stripe_customer_id=cell("stripeCustomerId"),
            stripe_subscription_id=cell("stripeSubscriptionId"),
        )


def map_header_indexes(headers: list[str]) -> dict[str, int]:
    """lower-cased header → first column index."""
    out: dict[str, int] = {}
    for i, h in enumerate(headers):
        out.setdefault(h.strip().lower(), i)
    return out


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------

class TTLCache(Generic[T]):
    """Single-value cache with a fixed time-to-live and explicit invalidation."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: T | None = None
        self._stored_at: float = 0.0

    def get(self) -> T | None:
        if self._value is None:
            return None
        if self._clock() - self._stored_at >= self._ttl:
            return None
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = 0.0


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

class CustomerDirectory:

    def __init__(
        self,
        sheets:   GoogleSheetsClient,
        cache:    TTLCache[list[CustomerRecord]] | None = None,
        sheet_id: str | None = None,
        tab:      str | None = None,
    ) -> None:
        self._sheets = sheets
        self._cache = cache or TTLCache(settings.customers_cache_ttl_seconds)
        self._sheet_id = sheet_id if sheet_id is not None else settings.master_customers_sheet_id
        self._tab = tab or settings.master_customers_tab

    @property
    def _range(self) -> str:
        return f"{self._tab}!A:ZZ"

    async def list_customers(self) -> list[CustomerRecord]:
        """All records in sheet order. Raises DirectoryError on read failure."""
        cached = self._cache.get()
        if cached is not None:
            return cached

        customers = await self._read_all()
        self._cache.set(customers)
        logger.debug("Customer directory refreshed | count=%d", len(customers))
        return customers

    async def resolve_by_intake_email(self, address: str | None) -> CustomerRecord | None:
        """
        Return the customer whose intakeEmail matches, or None.
        A directory outage resolves to None; the pipeline continues unresolved.
        """
        wanted = (address or "").strip().lower()
        if not wanted:
            return None
        try:
            customers = await self.list_customers()
        except DirectoryError as exc:
            logger.warning("Customer resolution failed (non-fatal) | to=%s error=%s", wanted, exc)
            return None

        for record in reversed(customers):
            if record.intake_email.strip().lower() == wanted:
                return record
        return None

    async def update_customer_field(self, customer_id: str, header: str, value: str) -> None:
        """Write one directory cell, then invalidate the cache."""
        if not self._sheet_id:
            raise DirectoryError("master customers sheet is not configured")

        values = await self._get_rows()
        if not values:
            raise CustomerNotFoundError(customer_id)

        index = map_header_indexes(values[0])
        target = index.get(header.lower())
        id_col = index.get("customerid")
        if target is None or id_col is None:
            raise DirectoryError(f"master sheet is missing header '{header}'")

        row_number = next(
            (
                i + 1
                for i, row in enumerate(values[1:], start=1)
                if id_col < len(row) and row[id_col].strip() == customer_id
            ),
            None,
        )
        if row_number is None:
            raise CustomerNotFoundError(customer_id)

        cell = f"{self._tab}!{column_letter(target + 1)}{row_number}"
        try:
            await self._sheets.update_values(self._sheet_id, cell, [[value]], value_input_option="RAW")
        except SheetsError as exc:
            raise DirectoryError(str(exc)) from exc
        finally:
            self.invalidate()

        logger.info(
            "Directory updated | customer=%s field=%s cell=%s",
            customer_id, header, cell,
        )

    async def update_billing_status(self, customer_id: str, status: str) -> None:
        await self.update_customer_field(customer_id, "billingStatus", status)

    def invalidate(self) -> None:
        self._cache.invalidate()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_rows(self) -> list[list[str]]:
        try:
            return await self._sheets.get_values(self._sheet_id, self._range)
        except SheetsError as exc:
            raise DirectoryError(str(exc)) from exc

    async def _read_all(self) -> list[CustomerRecord]:
        if not self._sheet_id:
            return []

        values = await self._get_rows()
        if len(values) < 2:
            return []

        index = map_header_indexes(values[0])
        if "customerid" not in index:
            logger.warning("Master sheet has no customerId header | tab=%s", self._tab)
            return []

        out: list[CustomerRecord] = []
        for row in values[1:]:
            record = CustomerRecord.from_row(index, row)
            if record.customer_id:
                out.append(record)
        return out
