"""
Inbound Webhooks Router

  POST /webhooks/inbound-file     multipart upload (file + toEmail)
  POST /webhooks/inbound-r2       pointer to an object already in R2
  POST /webhooks/resend-inbound   svix-verified Resend "email.received" push

Request lifecycle (all three shapes):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Input validation: required fields, extension         │
  │    allowlist, size caps → 4xx, no side effects          │
  │ 2. Bytes acquired (upload → R2 put, or R2/Resend get)   │
  │ 3. IntakePipeline.process() → PipelineResult            │
  │ 4. 200 with the result as diagnostic fields             │
  └─────────────────────────────────────────────────────────┘

Only step 1 (and a failed store / missing object in step 2) changes the
HTTP status. Skips, scorer errors and ledger failures come back in a 200
body: the sender must not retry a delivery that already had side effects.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from resume_sorter.api.dependencies import (
    Pipeline,
    ResendAPI,
    Storage,
    require_inbound_secret,
)
from resume_sorter.core.config import settings
from resume_sorter.schemas.intake import ErrorResponse, IntakeErrors, StoragePointerRequest, is_allowed_filename
from resume_sorter.services.intake import InboundDocument
from resume_sorter.services.resend_inbound import (
    EMAIL_RECEIVED,
    AttachmentsBlocked,
    ResendError,
    ResendInboundHandler,
    WebhookVerificationError,
    event_email_id,
    verify_webhook,
)
from resume_sorter.storage.s3 import build_inbound_key, filename_from_key, sanitize_filename

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Inbound Webhooks"],
)


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


# ---------------------------------------------------------------------------
# POST /webhooks/inbound-file
# ---------------------------------------------------------------------------

@router.post(
    "/inbound-file",
    summary="Submit a document as a multipart upload",
    responses={
        400: {"model": ErrorResponse, "description": "Missing file or toEmail"},
        413: {"model": ErrorResponse, "description": "File exceeds MAX_UPLOAD_BYTES"},
        415: {"model": ErrorResponse, "description": "Extension not in .pdf/.txt/.docx"},
        500: {"model": ErrorResponse, "description": "Object store write failed"},
    },
)
async def inbound_file(
    request:  Request,
    pipeline: Pipeline,
    storage:  Storage,
    file:     Optional[UploadFile] = File(None, description="Resume file (PDF, DOCX, TXT)"),
    to_email: Optional[str]        = Form(None, alias="toEmail", description="Target intake address"),
) -> JSONResponse:
    if file is None or not file.filename:
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.missing_file())

    to = _normalize_email(to_email)
    if not to:
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.missing_field("toEmail"))

    filename = sanitize_filename(file.filename)
    if not is_allowed_filename(filename):
        logger.info("Inbound file rejected | file=%s reason=unsupported_file_type", filename)
        return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, IntakeErrors.unsupported_file_type(filename))

    # Guard: reject oversized requests before reading the body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_upload_bytes + 4096:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            IntakeErrors.file_too_large(int(content_length), settings.max_upload_bytes),
        )

    data = await file.read()
    if len(data) > settings.max_upload_bytes:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            IntakeErrors.file_too_large(len(data), settings.max_upload_bytes),
        )

    key = build_inbound_key(filename)
    try:
        stored = await storage.put_object(key, data, content_type=file.content_type)
    except Exception as exc:
        logger.error("R2 upload failed | key=%s error=%s", key, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, IntakeErrors.storage_error(str(exc)))

    result = await pipeline.process(
        InboundDocument(
            data=data,
            filename=filename,
            to_email=to,
            source="inbound-file",
            storage_key=stored.key,
            storage_bucket=stored.bucket,
        )
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=result.as_dict())


# ---------------------------------------------------------------------------
# POST /webhooks/inbound-r2
# ---------------------------------------------------------------------------

@router.post(
    "/inbound-r2",
    summary="Process a document already stored in R2",
    dependencies=[Depends(require_inbound_secret)],
    responses={
        401: {"model": ErrorResponse, "description": "X-Inbound-Secret mismatch"},
        404: {"model": ErrorResponse, "description": "Object key not found"},
        415: {"model": ErrorResponse, "description": "Extension not in .pdf/.txt/.docx"},
    },
)
async def inbound_r2(
    body:     StoragePointerRequest,
    pipeline: Pipeline,
    storage:  Storage,
) -> JSONResponse:
    key = body.key.strip()
    if not key:
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.missing_field("key"))

    filename = filename_from_key(key)
    if not is_allowed_filename(filename):
        return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, IntakeErrors.unsupported_file_type(filename))

    try:
        data = await storage.get_object(key)
    except FileNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, IntakeErrors.object_not_found(key))

    result = await pipeline.process(
        InboundDocument(
            data=data,
            filename=filename,
            to_email=_normalize_email(body.to_email) or None,
            source="inbound-r2",
            storage_key=key,
            storage_bucket=storage.bucket,
        )
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=result.as_dict())


# ---------------------------------------------------------------------------
# POST /webhooks/resend-inbound
# ---------------------------------------------------------------------------

@router.post(
    "/resend-inbound",
    summary="Resend email-received webhook (svix-signed)",
    responses={
        400: {"model": ErrorResponse, "description": "Signature verification failed"},
        413: {"model": ErrorResponse, "description": "All attachments blocked by size guards"},
        415: {"model": ErrorResponse, "description": "All attachments have unsupported types"},
        500: {"model": ErrorResponse, "description": "Webhook secret or API key not configured"},
    },
)
async def resend_inbound(
    request:  Request,
    pipeline: Pipeline,
    storage:  Storage,
    resend:   ResendAPI,
) -> JSONResponse:
    if not settings.resend_webhook_secret:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, IntakeErrors.not_configured("resend_webhook_secret"))
    if not settings.resend_api_key:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, IntakeErrors.not_configured("resend_api_key"))

    payload = await request.body()
    try:
        event = verify_webhook(payload, dict(request.headers))
    except WebhookVerificationError as exc:
        logger.warning("Resend webhook rejected | error=%s", exc)
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.invalid_signature(str(exc)))

    event_type = str(event.get("type") or "")
    email_id = event_email_id(event)
    logger.info("Resend event verified | type=%s email=%s", event_type, email_id)

    if event_type != EMAIL_RECEIVED or not email_id:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"ok": True, "ignored": True})

    handler = ResendInboundHandler(resend, storage, pipeline)
    try:
        report = await handler.handle(email_id)
    except AttachmentsBlocked as blocked:
        code = (
            status.HTTP_415_UNSUPPORTED_MEDIA_TYPE if blocked.all_unsupported
            else status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        )
        return _error(code, IntakeErrors.attachments_blocked(blocked.rejected, blocked.all_unsupported))
    except ResendError as exc:
        logger.warning("Resend email fetch failed | email=%s error=%s", email_id, exc)
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"ok": True, "email_id": email_id, "fetched": False, "reason": "resend_fetch_failed"},
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=report.as_dict())
