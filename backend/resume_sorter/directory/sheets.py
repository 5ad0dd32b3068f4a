"""
Google Sheets REST client (values API only).

The directory and every tenant ledger live in Google Sheets, which offers:
  - range read           GET    /spreadsheets/{id}/values/{range}
  - range/cell write     PUT    /spreadsheets/{id}/values/{range}
  - row append           POST   /spreadsheets/{id}/values/{range}:append

There are no transactions, no row locks and no query language; callers scan
bounded windows client-side.

Retry policy:
  - 429 / 5xx / transport errors on GET and PUT are retried with exponential
    back-off. Both are idempotent (a PUT writes the same cell value again).
  - append is NEVER retried: a retried append that actually landed the
    first time would create a second row for the same day.

Access tokens come from an injected async provider. OAuth acquisition and
refresh happen outside this service; the default provider returns the
configured GOOGLE_ACCESS_TOKEN.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from resume_sorter.core.config import settings

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

MAX_RETRIES      = 2
RETRY_BASE_DELAY = 0.5    # seconds, doubled per retry
RETRY_MAX_DELAY  = 4.0

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class SheetsError(Exception):
    """A Sheets API call failed (HTTP error or transport failure)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


async def static_token_provider() -> str:
    return settings.google_access_token


def column_letter(n: int) -> str:
    """1-based column index → A1 letter (1 → A, 27 → AA)."""
    s = ""
    while n > 0:
        m = (n - 1) % 26
        s = chr(65 + m) + s
        n = (n - 1) // 26
    return s


class GoogleSheetsClient:
    """Thin async wrapper over the Sheets v4 values endpoints."""

    def __init__(
        self,
        token_provider: TokenProvider | None = None,
        http_client:    httpx.AsyncClient | None = None,
        api_base:       str | None = None,
        max_retries:    int = MAX_RETRIES,
    ) -> None:
        self._token_provider = token_provider or static_token_provider
        self._http = http_client or httpx.AsyncClient(timeout=20.0)
        self._base = (api_base or settings.google_sheets_api_base).rstrip("/")
        self._max_retries = max_retries

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_values(self, spreadsheet_id: str, range_a1: str) -> list[list[str]]:
        """Return the 2-D values array for a range ([] when the range is empty)."""
        data = await self._request(
            "GET",
            self._values_url(spreadsheet_id, range_a1),
            retry=True,
        )
        return [[_cell_str(c) for c in row] for row in data.get("values", [])]

    async def update_values(
        self,
        spreadsheet_id: str,
        range_a1: str,
        values: list[list[Any]],
        value_input_option: str = "RAW",
    ) -> None:
        await self._request(
            "PUT",
            self._values_url(spreadsheet_id, range_a1),
            params={"valueInputOption": value_input_option},
            json={"range": range_a1, "majorDimension": "ROWS", "values": values},
            retry=True,
        )

    async def append_values(
        self,
        spreadsheet_id: str,
        range_a1: str,
        values: list[list[Any]],
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        await self._request(
            "POST",
            self._values_url(spreadsheet_id, range_a1) + ":append",
            params={"valueInputOption": value_input_option, "insertDataOption": "INSERT_ROWS"},
            json={"majorDimension": "ROWS", "values": values},
            retry=False,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _values_url(self, spreadsheet_id: str, range_a1: str) -> str:
        return f"{self._base}/spreadsheets/{spreadsheet_id}/values/{quote(range_a1, safe='!:$')}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        retry: bool,
    ) -> dict:
        attempts = (self._max_retries + 1) if retry else 1
        last_error: SheetsError | None = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Sheets retry | method=%s attempt=%d delay=%.1fs error=%s",
                    method, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            token = await self._token_provider()
            try:
                resp = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                last_error = SheetsError(f"transport error: {exc}")
                continue

            if resp.status_code < 400:
                return resp.json() if resp.content else {}

            last_error = SheetsError(
                f"Sheets API {method} failed: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
            if resp.status_code not in _RETRYABLE_STATUS:
                break

        raise last_error or SheetsError(f"Sheets API {method} failed")


def _cell_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
