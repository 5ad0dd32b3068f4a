"""
Nightly job: trial enforcement, customer daily reports, admin summary.

Triggered by GET /admin/nightly-run (cron or manual). Safe to re-run on the
same day: the trial sweep only moves trial/trialing customers, and the daily
report is a read of today's ledger row.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from resume_sorter.core.config import settings
from resume_sorter.directory.billing import evaluate_billing_status
from resume_sorter.directory.customers import CustomerDirectory, CustomerRecord, DirectoryError
from resume_sorter.directory.sheets import SheetsError
from resume_sorter.ledger.engine import LedgerEngine, build_public_url, today_in_timezone
from resume_sorter.notifications.dispatcher import NotificationError, NotificationSender

logger = logging.getLogger(__name__)

TRIAL_STATUSES = frozenset({"trial", "trialing"})
ENDING_SOON_DAYS = 3

_HYPERLINK_RE = re.compile(r'=HYPERLINK\(\s*"([^"]+)"', re.IGNORECASE)


def parse_timestamp(value: str, tz_name: str | None = None) -> datetime | None:
    """Parse an ISO date/datetime; naive values are taken in the tenant zone."""
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(tz_name or settings.timezone))
    return parsed


def url_from_hyperlink(cell: str) -> str:
    match = _HYPERLINK_RE.search(cell or "")
    return match.group(1) if match else (cell or "")


@dataclass
class NightlyReport:
    date:         str
    checked:      int = 0
    trial_ended:  list[str] = field(default_factory=list)
    ending_soon:  list[str] = field(default_factory=list)
    reports_sent: list[str] = field(default_factory=list)
    failures:     list[str] = field(default_factory=list)
    lines:        list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def as_dict(self) -> dict:
        return {
            "ok":           True,
            "date":         self.date,
            "checked":      self.checked,
            "trial_ended":  self.trial_ended,
            "ending_soon":  self.ending_soon,
            "reports_sent": self.reports_sent,
            "failures":     self.failures,
            "report":       self.text,
        }


class NightlyJob:

    def __init__(
        self,
        directory: CustomerDirectory,
        ledger:    LedgerEngine,
        sender:    NotificationSender,
        admin_email: str | None = None,
    ) -> None:
        self._directory = directory
        self._ledger = ledger
        self._sender = sender
        self._admin_email = settings.admin_email if admin_email is None else admin_email

    async def run(self, now: datetime | None = None) -> NightlyReport:
        """Raises DirectoryError only when the customer list itself is unreadable."""
        now = now or datetime.now(timezone.utc)
        today = today_in_timezone(now=now)
        customers = await self._directory.list_customers()

        report = NightlyReport(date=today, checked=len(customers))
        report.lines += [
            f"Nightly run: {today} ({settings.timezone})",
            f"Customers checked: {len(customers)}",
            "",
        ]

        for customer in customers:
            await self._sweep_trial(customer, now, report)

        for customer in customers:
            await self._send_daily_report(customer, today, report)

        await self._send_admin_summary(today, report)
        logger.info(
            "Nightly done | date=%s checked=%d ended=%d soon=%d reports=%d failures=%d",
            today, report.checked, len(report.trial_ended), len(report.ending_soon),
            len(report.reports_sent), len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Trial sweep
    # ------------------------------------------------------------------

    async def _sweep_trial(self, customer: CustomerRecord, now: datetime, report: NightlyReport) -> None:
        if customer.billing_status.strip().lower() not in TRIAL_STATUSES:
            return
        ends = parse_timestamp(customer.trial_end_at)
        if ends is None:
            return

        if ends <= now:
            try:
                await self._directory.update_billing_status(customer.customer_id, "trial_ended")
            except DirectoryError as exc:
                logger.warning("Trial sweep failed | customer=%s error=%s", customer.customer_id, exc)
                report.failures.append(f"{customer.customer_id}: trial_sweep")
                return
            report.trial_ended.append(customer.customer_id)
            report.lines.append(
                f"TRIAL ENDED: {customer.company_name} ({customer.customer_id}) -> trial_ended"
            )
        elif ends <= now + timedelta(days=ENDING_SOON_DAYS):
            report.ending_soon.append(customer.customer_id)
            report.lines.append(f"TRIAL ENDING SOON: {customer.company_name} ends {customer.trial_end_at}")

    # ------------------------------------------------------------------
    # Customer daily report
    # ------------------------------------------------------------------

    async def _send_daily_report(self, customer: CustomerRecord, today: str, report: NightlyReport) -> None:
        to = customer.report_to_email
        sheet_id = customer.current_sheet_id
        if not to or not sheet_id:
            return
        # Statuses flipped by the sweep above are still in the cached snapshot.
        if customer.customer_id in report.trial_ended:
            return
        if not evaluate_billing_status(customer.billing_status).allowed:
            return

        try:
            day = await self._ledger.read_day(sheet_id, today)
            if day is None or day.count <= 0:
                return

            subject, body = build_daily_report(customer, today, day)
            await self._sender.send(to, subject, body)
        except (SheetsError, NotificationError) as exc:
            logger.warning("Nightly report failed | customer=%s error=%s", customer.customer_id, exc)
            report.failures.append(f"{customer.customer_id}: daily_report")
            return

        report.reports_sent.append(customer.customer_id)
        logger.info("Nightly report sent | customer=%s to=%s count=%d", customer.customer_id, to, day.count)

    async def _send_admin_summary(self, today: str, report: NightlyReport) -> None:
        if not self._admin_email:
            return
        try:
            await self._sender.send(
                self._admin_email,
                f"{settings.brand_name} Nightly ({today})",
                report.text,
            )
        except NotificationError as exc:
            logger.warning("Nightly admin summary failed (non-fatal) | error=%s", exc)


def build_daily_report(customer: CustomerRecord, today: str, day) -> tuple[str, str]:
    company = customer.company_name or customer.customer_id
    public_url = build_public_url(day.r2_key) if day.r2_key else ""
    last_score = f"Last score: {day.last_score:g}" if day.last_score is not None else "Last score: N/A"

    lines = [
        f"Daily Resume Report - {company}",
        "",
        f"Date: {today}",
        f"Resumes processed: {day.count}",
        last_score,
    ]
    if public_url:
        lines += ["", f"Latest resume (public): {public_url}"]
    if day.resume_link:
        lines += ["", "Latest resume link:", url_from_hyperlink(day.resume_link)]

    return f"Daily Resume Report - {company} ({today})", "\n".join(lines)
