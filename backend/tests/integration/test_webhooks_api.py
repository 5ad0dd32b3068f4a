"""
Integration Tests — HTTP surface of the intake service
══════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Multipart form parsing and JSON bodies (aliases: toEmail, customerId)
  - Dependency overrides for every external collaborator
  - Status codes and the structured ErrorResponse envelope
  - Shared-secret guards on /admin/*

What is mocked vs real
──────────────────────
  ✅ Real: routing, validation, IntakePipeline, classifier, extractor,
           ledger engine, directory + billing gate, dispatcher decisions
  🔲 Mock: Google Sheets     (FakeSheetsClient grid)
  🔲 Mock: R2 storage        (mock_storage fixture)
  🔲 Mock: OpenAI            (mock_scorer fixture)
  🔲 Mock: Postgres          (mock_audit / mock_rubrics fixtures)
  🔲 Mock: Resend            (RecordingSender + mocked receiving client)

How to run
──────────
  pytest -m integration tests/integration/test_webhooks_api.py -v
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from svix.webhooks import Webhook

from resume_sorter.core.config import settings
from resume_sorter.services.resend_inbound import ResendReceivingClient
from tests.conftest import ACME, INVOICE_TEXT, LEDGER_SHEET_ID, MASTER_SHEET_ID, RESUME_TEXT

ADMIN = {"X-Admin-Secret": "admin-secret"}


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _upload(filename: str, content: bytes, to_email: str | None = ACME["intakeEmail"]) -> dict:
    kwargs: dict = {"files": {"file": (filename, content, "application/octet-stream")}}
    if to_email is not None:
        kwargs["data"] = {"toEmail": to_email}
    return kwargs


def _signed(payload: dict) -> tuple[str, dict[str, str]]:
    body = json.dumps(payload)
    now = datetime.now(timezone.utc)
    headers = {
        "svix-id":        "msg_test",
        "svix-timestamp": str(int(now.timestamp())),
        "svix-signature": Webhook(settings.resend_webhook_secret).sign("msg_test", now, body),
        "Content-Type":   "application/json",
    }
    return body, headers


@pytest.fixture
def resend_client():
    from resume_sorter.api import dependencies as deps
    from resume_sorter.main import app

    client = MagicMock(spec=ResendReceivingClient)
    client.get_email = AsyncMock(return_value={"id": "em_1", "to": [ACME["intakeEmail"]], "text": ""})
    client.list_attachments = AsyncMock(return_value=[])
    client.download = AsyncMock(return_value=RESUME_TEXT.encode())
    app.dependency_overrides[deps.get_resend_client] = lambda: client
    return client


# ─────────────────────────────────────────────────────────────────────────────
# POST /webhooks/inbound-file
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestInboundFile:

    async def test_resume_upload_is_scored_and_counted(self, async_client, fake_sheets, mock_storage, sender):
        resp = await async_client.post("/webhooks/inbound-file", **_upload("Jane Doe.txt", RESUME_TEXT.encode()))

        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["doc_type"] == "RESUME"
        assert body["customer_id"] == "cust_acme"
        assert body["ai"]["score"] == 87.0
        assert body["tally"]["should_increment"] is True
        assert body["r2"]["key"].endswith("__Jane_Doe.txt")
        assert body["notification"]["kind"] == "scored"
        mock_storage.put_object.assert_awaited_once()
        assert len(sender.sent) == 1
        assert "X-Request-ID" in resp.headers

    async def test_to_email_is_normalized(self, async_client):
        resp = await async_client.post(
            "/webhooks/inbound-file",
            **_upload("cv.txt", RESUME_TEXT.encode(), to_email="  ACME@Intake.ResumeSorter.test "),
        )
        assert resp.json()["to_email"] == "acme@intake.resumesorter.test"
        assert resp.json()["match_found"] is True

    async def test_same_upload_twice_counts_once(self, async_client, fake_sheets, sender):
        for _ in range(2):
            resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", RESUME_TEXT.encode()))
            assert resp.status_code == 200

        assert resp.json()["tally"]["reason"] == "idempotent_skip"
        row = fake_sheets.rows(LEDGER_SHEET_ID)[1]
        assert row[1] == "1"
        assert len(sender.sent) == 1

    async def test_invoice_is_non_resume(self, async_client, sender):
        resp = await async_client.post("/webhooks/inbound-file", **_upload("invoice.txt", INVOICE_TEXT.encode()))
        body = resp.json()
        assert resp.status_code == 200
        assert body["doc_type"] == "NON_RESUME"
        assert body["ai"] == {"skipped": True, "reason": "non_resume"}
        assert sender.sent == []

    async def test_unsupported_extension_is_415_without_side_effects(
        self, async_client, mock_storage, mock_scorer, fake_sheets, sender,
    ):
        resp = await async_client.post("/webhooks/inbound-file", **_upload("candidates.csv", b"a,b,c"))

        assert resp.status_code == 415
        assert resp.json()["error_code"] == "unsupported_file_type"
        mock_storage.put_object.assert_not_awaited()
        mock_scorer.score.assert_not_awaited()
        assert fake_sheets.calls == []
        assert sender.sent == []

    async def test_missing_to_email_is_400(self, async_client, mock_storage):
        resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", b"x", to_email=None))
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "missing_toEmail"
        mock_storage.put_object.assert_not_awaited()

    async def test_missing_file_is_400(self, async_client):
        resp = await async_client.post("/webhooks/inbound-file", data={"toEmail": ACME["intakeEmail"]})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "missing_file"

    async def test_oversized_file_is_413(self, async_client, mock_storage):
        with patch.object(settings, "max_upload_bytes", 64):
            resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", b"x" * 200))
        assert resp.status_code == 413
        assert resp.json()["error_code"] == "file_too_large"
        mock_storage.put_object.assert_not_awaited()

    async def test_storage_failure_is_500(self, async_client, mock_storage, mock_scorer):
        mock_storage.put_object.side_effect = RuntimeError("r2 unavailable")
        resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", RESUME_TEXT.encode()))
        assert resp.status_code == 500
        assert resp.json()["error_code"] == "r2_upload_failed"
        mock_scorer.score.assert_not_awaited()

    async def test_ledger_outage_still_returns_200(self, async_client, fake_sheets, sender):
        fake_sheets.fail_ranges.add("A2:H1000")
        resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", RESUME_TEXT.encode()))
        assert resp.status_code == 200
        assert resp.json()["tally"]["error"] == "tally_failed"
        assert sender.sent == []


# ─────────────────────────────────────────────────────────────────────────────
# POST /webhooks/inbound-r2
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestInboundR2:

    async def test_stored_object_is_processed(self, async_client, mock_storage):
        key = "inbound/2026-03-02T15-00-00-000Z__jane.txt"
        resp = await async_client.post(
            "/webhooks/inbound-r2", json={"key": key, "toEmail": ACME["intakeEmail"]},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["source"] == "inbound-r2"
        assert body["filename"] == "jane.txt"
        assert body["r2"] == {"bucket": "test-bucket", "key": key}
        mock_storage.get_object.assert_awaited_once_with(key)

    async def test_missing_object_is_404(self, async_client, mock_storage):
        mock_storage.get_object.side_effect = FileNotFoundError("gone")
        resp = await async_client.post("/webhooks/inbound-r2", json={"key": "inbound/x__gone.pdf"})
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "r2_object_not_found"

    async def test_unsupported_key_extension_is_415(self, async_client, mock_storage):
        resp = await async_client.post("/webhooks/inbound-r2", json={"key": "inbound/x__photo.png"})
        assert resp.status_code == 415
        mock_storage.get_object.assert_not_awaited()

    async def test_missing_key_is_validation_error(self, async_client):
        resp = await async_client.post("/webhooks/inbound-r2", json={"toEmail": "a@b.test"})
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    async def test_inbound_secret_enforced_when_configured(self, async_client):
        with patch.object(settings, "inbound_secret", "s3cret"):
            denied = await async_client.post("/webhooks/inbound-r2", json={"key": "inbound/x__a.txt"})
            allowed = await async_client.post(
                "/webhooks/inbound-r2", json={"key": "inbound/x__a.txt"},
                headers={"X-Inbound-Secret": "s3cret"},
            )
        assert denied.status_code == 401
        assert denied.json()["error_code"] == "unauthorized"
        assert allowed.status_code == 200


# ─────────────────────────────────────────────────────────────────────────────
# POST /webhooks/resend-inbound
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestResendInbound:

    async def test_bad_signature_is_400(self, async_client, resend_client):
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})
        headers["svix-signature"] = "v1,bm90IGEgcmVhbCBzaWduYXR1cmU="
        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_signature"
        resend_client.get_email.assert_not_awaited()

    async def test_other_event_types_are_ignored(self, async_client, resend_client):
        body, headers = _signed({"type": "email.delivered", "data": {"email_id": "em_1"}})
        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "ignored": True}

    async def test_attachment_is_processed(self, async_client, resend_client, sender):
        resend_client.list_attachments.return_value = [
            {"id": "a1", "filename": "jane.txt", "size": 900, "download_url": "https://dl.test/a1"},
        ]
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})

        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)

        assert resp.status_code == 200
        report = resp.json()
        assert report["email_id"] == "em_1"
        assert report["processed"][0]["result"]["doc_type"] == "RESUME"
        assert len(sender.sent) == 1

    async def test_unsupported_attachments_are_415(self, async_client, resend_client):
        resend_client.list_attachments.return_value = [{"id": "a1", "filename": "photo.png", "size": 10}]
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})
        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 415
        assert resp.json()["error_code"] == "unsupported_file_type"

    async def test_oversized_attachments_are_413(self, async_client, resend_client):
        resend_client.list_attachments.return_value = [
            {"id": "a1", "filename": "cv.pdf", "size": settings.max_attachment_bytes + 1},
        ]
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})
        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 413
        assert resp.json()["error_code"] == "attachments_blocked_by_size_guard"

    async def test_fetch_failure_is_acknowledged(self, async_client, resend_client):
        from resume_sorter.services.resend_inbound import ResendError

        resend_client.get_email.side_effect = ResendError("503")
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})
        resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["reason"] == "resend_fetch_failed"

    async def test_missing_secret_is_500(self, async_client, resend_client):
        body, headers = _signed({"type": "email.received", "data": {"email_id": "em_1"}})
        with patch.object(settings, "resend_webhook_secret", ""):
            resp = await async_client.post("/webhooks/resend-inbound", content=body, headers=headers)
        assert resp.status_code == 500
        assert resp.json()["error_code"] == "missing_resend_webhook_secret"


# ─────────────────────────────────────────────────────────────────────────────
# Rubrics
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestRubrics:

    async def test_upsert_and_get(self, async_client, mock_rubrics):
        resp = await async_client.post(
            "/customers/rubric", json={"customerId": "cust_acme", "rubric": {"mustHave": ["python"]}},
        )
        assert resp.status_code == 200
        mock_rubrics.upsert.assert_awaited_once_with("cust_acme", {"mustHave": ["python"]})

        mock_rubrics.get.return_value = {"mustHave": ["python"]}
        resp = await async_client.get("/customers/rubric", params={"customerId": "cust_acme"})
        assert resp.json() == {"ok": True, "customerId": "cust_acme", "rubric": {"mustHave": ["python"]}}

    async def test_non_object_rubric_is_400(self, async_client, mock_rubrics):
        resp = await async_client.post("/customers/rubric", json={"customerId": "cust_acme", "rubric": ["a"]})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_rubric"
        mock_rubrics.upsert.assert_not_awaited()

    async def test_get_without_customer_id_is_400(self, async_client):
        resp = await async_client.get("/customers/rubric")
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "missing_customerId"

    async def test_store_failure_is_500(self, async_client, mock_rubrics):
        mock_rubrics.upsert.side_effect = RuntimeError("db down")
        resp = await async_client.post("/customers/rubric", json={"customerId": "cust_acme", "rubric": {}})
        assert resp.status_code == 500
        assert resp.json()["error_code"] == "rubric_save_failed"


# ─────────────────────────────────────────────────────────────────────────────
# Admin + debug + health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestAdmin:

    async def test_admin_requires_secret(self, async_client):
        resp = await async_client.post("/admin/customers/cust_acme/billing-status", json={"status": "active"})
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "unauthorized"

    async def test_wrong_secret_is_401(self, async_client):
        resp = await async_client.get("/admin/nightly-run", headers={"X-Admin-Secret": "nope"})
        assert resp.status_code == 401

    async def test_unconfigured_secret_is_500(self, async_client):
        with patch.object(settings, "admin_job_secret", ""):
            resp = await async_client.get("/admin/nightly-run", headers=ADMIN)
        assert resp.status_code == 500
        assert resp.json()["error_code"] == "missing_admin_job_secret"

    async def test_billing_status_update(self, async_client, fake_sheets):
        resp = await async_client.post(
            "/admin/customers/cust_acme/billing-status", json={"status": "Past_Due"}, headers=ADMIN,
        )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "customerId": "cust_acme", "billingStatus": "past_due"}
        assert ("update", MASTER_SHEET_ID, "Customers!F2") in fake_sheets.calls

    async def test_blocked_after_status_change(self, async_client, sender, mock_scorer):
        await async_client.post(
            "/admin/customers/cust_acme/billing-status", json={"status": "canceled"}, headers=ADMIN,
        )
        resp = await async_client.post("/webhooks/inbound-file", **_upload("cv.txt", RESUME_TEXT.encode()))
        body = resp.json()
        assert body["blocked"] is True
        assert body["blocked_reason"] == "canceled"
        mock_scorer.score.assert_not_awaited()
        assert sender.sent == []

    async def test_unknown_status_is_400(self, async_client):
        resp = await async_client.post(
            "/admin/customers/cust_acme/billing-status", json={"status": "vip"}, headers=ADMIN,
        )
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "invalid_status"

    async def test_unknown_customer_is_404(self, async_client):
        resp = await async_client.post(
            "/admin/customers/cust_nobody/billing-status", json={"status": "active"}, headers=ADMIN,
        )
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "customer_not_found"

    async def test_nightly_run(self, async_client, sender):
        resp = await async_client.get("/admin/nightly-run", headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert body["checked"] == 1
        assert body["trial_ended"] == []
        assert [m["to"] for m in sender.sent] == ["ops@resumesorter.test"]

    async def test_nightly_run_directory_outage_is_502(self, async_client, fake_sheets):
        fake_sheets.fail_methods.add("get")
        resp = await async_client.get("/admin/nightly-run", headers=ADMIN)
        assert resp.status_code == 502
        assert resp.json()["error_code"] == "directory_read_failed"


@pytest.mark.integration
class TestOperations:

    async def test_debug_customers(self, async_client):
        resp = await async_client.get("/debug/customers")
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == 1
        assert body["customers"][0]["customer_id"] == "cust_acme"

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_readiness_reports_database(self, async_client):
        with patch(
            "resume_sorter.main.check_db_health",
            AsyncMock(return_value={"status": "error", "detail": "refused"}),
        ):
            resp = await async_client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"
