"""
Resend Inbound — verified email-received webhooks → intake pipeline

Flow for one `email.received` event:

  svix verify ─▶ GET /emails/receiving/{id} ─▶ recipient = first "to"
        │
        ▼
  GET /emails/receiving/{id}/attachments
        │
        ├─ none ─▶ text body processed as email_{id}.txt
        │
        ▼
  guard_attachments()   (metadata only, nothing downloaded yet)
    - first MAX_ATTACHMENTS only
    - extension allowlist              → unsupported_file_type
    - size missing / non-positive      → missing_or_invalid_size
    - size > MAX_ATTACHMENT_BYTES      → attachment_too_large
    - running total > MAX_TOTAL        → total_attachments_too_large
        │
        ▼ (each accepted attachment)
  streamed download with byte cap ─▶ R2 put ─▶ IntakePipeline.process()

If every attachment is rejected the handler raises AttachmentsBlocked and
the route answers 415 (all type rejections) or 413 (any size rejection).
Per-attachment failures after the guard (download, store) are reported in
the response list and do not stop the remaining attachments.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

import httpx
from svix.webhooks import Webhook, WebhookVerificationError

from resume_sorter.core.config import settings
from resume_sorter.schemas.intake import ALLOWED_EXTENSIONS, is_allowed_filename
from resume_sorter.services.intake import InboundDocument, IntakePipeline
from resume_sorter.storage.s3 import ObjectStorageService, build_inbound_key, sanitize_filename

logger = logging.getLogger(__name__)

SOURCE = "resend-inbound"
EMAIL_RECEIVED = "email.received"


class ResendError(Exception):
    """The Resend receiving API could not be read."""


class AttachmentTooLargeError(Exception):
    pass


class AttachmentsBlocked(Exception):
    """No attachment survived the guard."""

    def __init__(self, rejected: list[dict[str, Any]]) -> None:
        super().__init__(f"{len(rejected)} attachment(s) rejected")
        self.rejected = rejected

    @property
    def all_unsupported(self) -> bool:
        return bool(self.rejected) and all(r["reason"] == "unsupported_file_type" for r in self.rejected)


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------

def verify_webhook(payload: bytes, headers: dict[str, str], secret: str | None = None) -> dict:
    """
    Verify svix headers and return the decoded event.
    Raises WebhookVerificationError on a bad or stale signature.
    """
    wh = Webhook(secret or settings.resend_webhook_secret)
    return wh.verify(
        payload,
        {
            "svix-id":        headers.get("svix-id", ""),
            "svix-timestamp": headers.get("svix-timestamp", ""),
            "svix-signature": headers.get("svix-signature", ""),
        },
    )


def event_email_id(event: dict) -> str:
    data = event.get("data") or {}
    return str(data.get("id") or data.get("email_id") or "").strip()


def pick_recipient(email: dict) -> str | None:
    to = email.get("to")
    if isinstance(to, list):
        to = to[0] if to else None
    to = (to or "").strip() if isinstance(to, str) else ""
    return to or None


# ---------------------------------------------------------------------------
# Attachment guard
# ---------------------------------------------------------------------------

def guard_attachments(
    attachments:      list[dict[str, Any]],
    max_count:        int | None = None,
    max_bytes:        int | None = None,
    max_total_bytes:  int | None = None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Split attachment metadata into (accepted, rejected) without downloading."""
    max_count = settings.max_attachments if max_count is None else max_count
    max_bytes = settings.max_attachment_bytes if max_bytes is None else max_bytes
    max_total_bytes = settings.max_total_attach_bytes if max_total_bytes is None else max_total_bytes

    accepted: list[dict[str, Any]] = []
    rejected: list[dict[str, Any]] = []
    total = 0

    for att in attachments[:max_count]:
        name = sanitize_filename(att.get("filename") or "attachment.bin")
        size = _as_size(att.get("size"))

        if not is_allowed_filename(name):
            rejected.append({
                "id": att.get("id"), "filename": name, "size": size,
                "reason": "unsupported_file_type", "allowed": sorted(ALLOWED_EXTENSIONS),
            })
            continue
        if size is None or size <= 0:
            rejected.append({"id": att.get("id"), "filename": name, "size": size, "reason": "missing_or_invalid_size"})
            continue
        if size > max_bytes:
            rejected.append({
                "id": att.get("id"), "filename": name, "size": size,
                "reason": "attachment_too_large", "limit": max_bytes,
            })
            continue
        if total + size > max_total_bytes:
            rejected.append({
                "id": att.get("id"), "filename": name, "size": size,
                "reason": "total_attachments_too_large", "limit": max_total_bytes,
            })
            continue

        total += size
        accepted.append({**att, "filename": name, "size": size})

    return accepted, rejected


def _as_size(value: Any) -> int | None:
    try:
        size = float(value)
    except (TypeError, ValueError):
        return None
    return int(size) if math.isfinite(size) else None


# ---------------------------------------------------------------------------
# Receiving API client
# ---------------------------------------------------------------------------

class ResendReceivingClient:

    def __init__(
        self,
        api_key:     str | None = None,
        api_base:    str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout:     float = 15.0,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.resend_api_key
        self._base = (api_base or settings.resend_api_base).rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_email(self, email_id: str) -> dict:
        body = await self._get_json(f"/emails/receiving/{email_id}")
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        return data

    async def list_attachments(self, email_id: str) -> list[dict]:
        body = await self._get_json(f"/emails/receiving/{email_id}/attachments")
        data = body.get("data", body)
        return [a for a in data if isinstance(a, dict)] if isinstance(data, list) else []

    async def download(self, url: str, max_bytes: int) -> bytes:
        """Stream a signed download URL, aborting once max_bytes is exceeded."""
        chunks: list[bytes] = []
        received = 0
        try:
            async with self._client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise ResendError(f"attachment download returned {resp.status_code}")
                async for chunk in resp.aiter_bytes():
                    received += len(chunk)
                    if received > max_bytes:
                        raise AttachmentTooLargeError(f"download exceeded {max_bytes} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise ResendError(f"attachment download failed: {exc}") from exc
        return b"".join(chunks)

    async def _get_json(self, path: str) -> dict:
        try:
            resp = await self._client.get(
                f"{self._base}{path}",
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            raise ResendError(f"GET {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ResendError(f"GET {path} returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResendError(f"GET {path} returned a non-JSON body") from exc
        return body if isinstance(body, dict) else {"data": body}


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

@dataclass
class InboundEmailReport:
    email_id:    str
    to_email:    str | None = None
    attachments: int = 0
    processed:   list[dict[str, Any]] = field(default_factory=list)
    reason:      str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok":          True,
            "email_id":    self.email_id,
            "to_email":    self.to_email,
            "attachments": self.attachments,
            "processed":   self.processed,
            "reason":      self.reason,
        }


class ResendInboundHandler:

    def __init__(
        self,
        client:   ResendReceivingClient,
        storage:  ObjectStorageService,
        pipeline: IntakePipeline,
    ) -> None:
        self._client = client
        self._storage = storage
        self._pipeline = pipeline

    async def handle(self, email_id: str) -> InboundEmailReport:
        """
        Process one received email. Raises ResendError when the email itself
        cannot be fetched and AttachmentsBlocked when the guard rejects all.
        """
        email = await self._client.get_email(email_id)
        to_email = pick_recipient(email)
        report = InboundEmailReport(email_id=email_id, to_email=to_email)
        if not to_email:
            report.reason = "missing_to"
            return report

        attachments = await self._client.list_attachments(email_id)
        report.attachments = len(attachments)

        if not attachments:
            body = str(email.get("text") or "").strip()
            if not body:
                report.reason = "empty_body"
                return report
            filename = f"email_{email_id}.txt"
            report.processed.append(
                await self._store_and_process(filename, body.encode("utf-8"), to_email, "text/plain")
            )
            return report

        accepted, rejected = guard_attachments(attachments)
        if not accepted:
            logger.info(
                "Resend attachments blocked | email=%s rejected=%s",
                email_id, [r["reason"] for r in rejected],
            )
            raise AttachmentsBlocked(rejected)

        for att in accepted:
            report.processed.append(await self._process_attachment(att, to_email))
        return report

    async def _process_attachment(self, att: dict[str, Any], to_email: str) -> dict[str, Any]:
        filename = att["filename"]
        url = str(att.get("download_url") or "")
        if not url:
            return {"ok": False, "filename": filename, "error": "missing_download_url"}

        try:
            data = await self._client.download(url, settings.max_attachment_bytes)
        except AttachmentTooLargeError:
            return {"ok": False, "filename": filename, "error": "payload_too_large"}
        except ResendError as exc:
            logger.warning("Attachment download failed | file=%s error=%s", filename, exc)
            return {"ok": False, "filename": filename, "error": "download_failed"}

        if not data:
            return {"ok": False, "filename": filename, "error": "download_failed"}

        return await self._store_and_process(filename, data, to_email, att.get("content_type"))

    async def _store_and_process(
        self,
        filename:     str,
        data:         bytes,
        to_email:     str,
        content_type: str | None,
    ) -> dict[str, Any]:
        key = build_inbound_key(filename)
        try:
            stored = await self._storage.put_object(key, data, content_type=content_type)
        except Exception as exc:
            logger.error("R2 upload failed (resend) | key=%s error=%s", key, exc)
            return {"ok": False, "filename": filename, "error": "r2_upload_failed"}

        result = await self._pipeline.process(
            InboundDocument(
                data=data,
                filename=filename,
                to_email=to_email,
                source=SOURCE,
                storage_key=stored.key,
                storage_bucket=stored.bucket,
            )
        )
        return {"ok": True, "filename": filename, "r2_key": stored.key, "result": result.as_dict()}
