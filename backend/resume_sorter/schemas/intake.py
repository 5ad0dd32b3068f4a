"""
Intake — Pydantic Request/Response Schemas

Covers the webhook surface:
  - POST /webhooks/inbound-file     (multipart upload)
  - POST /webhooks/inbound-r2       (object-store pointer)
  - POST /webhooks/resend-inbound   (verified email-received push)
  - /customers/rubric and /admin/*  (tenant settings and operations)

Design decisions:
  - Only input rejection changes the HTTP status. Everything that happens
    after the document is accepted (skips, scorer errors, ledger failures)
    is reported inside a 200 body as diagnostic fields.
  - Error codes are stable lower_snake strings so webhook senders and ops
    tooling can match on them.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# File-type allowlist — enforced before any extraction, download or store
# ---------------------------------------------------------------------------

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".txt", ".docx"})


def get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot ("" if none)."""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    parts = base.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 and parts[-1] else ""


def is_allowed_filename(filename: str) -> bool:
    return get_extension(filename) in ALLOWED_EXTENSIONS


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class StoragePointerRequest(BaseModel):
    """Body of POST /webhooks/inbound-r2 — names an object already in R2."""
    model_config = ConfigDict(populate_by_name=True)

    key:      str        = Field(..., min_length=1, description="Object key in the inbound bucket")
    to_email: str | None = Field(None, alias="toEmail", description="Target intake address")


class RubricUpsertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(..., alias="customerId", min_length=1)
    rubric:      Any = Field(..., description="Scoring criteria; must be a JSON object")


class BillingStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    ok:            bool              = False
    error_code:    str               = Field(..., description="Stable machine-readable code")
    message:       str               = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class IntakeErrors:
    """Factories for every documented rejection."""

    @staticmethod
    def unsupported_file_type(filename: str) -> ErrorResponse:
        ext = get_extension(filename) or "(none)"
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
        return ErrorResponse(
            error_code="unsupported_file_type",
            message=f"File type '{ext}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has extension '{ext}'. Allowed: {allowed}.",
                    code="unsupported_file_type",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="file_too_large",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="file_too_large",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="missing_file",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="missing_file",
                )
            ],
        )

    @staticmethod
    def missing_field(field: str) -> ErrorResponse:
        return ErrorResponse(
            error_code=f"missing_{field}",
            message=f"'{field}' is required.",
            details=[ErrorDetail(field=field, message=f"'{field}' must be non-empty.", code="missing_field")],
        )

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="unauthorized",
            message="Missing or invalid shared secret.",
        )

    @staticmethod
    def not_configured(what: str) -> ErrorResponse:
        return ErrorResponse(
            error_code=f"missing_{what}",
            message=f"Server is missing required configuration: {what}.",
        )

    @staticmethod
    def invalid_signature(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="invalid_signature",
            message="Webhook signature verification failed.",
            details=(
                [ErrorDetail(field=None, message=detail, code="invalid_signature")]
                if detail
                else []
            ),
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="r2_upload_failed",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="r2_upload_failed")]
                if detail
                else []
            ),
        )

    @staticmethod
    def object_not_found(key: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="r2_object_not_found",
            message=f"Object '{key}' was not found in the inbound bucket.",
        )

    @staticmethod
    def upstream_error(code: str, detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=code,
            message="An upstream provider request failed.",
            details=(
                [ErrorDetail(field=None, message=detail, code=code)]
                if detail
                else []
            ),
        )

    @staticmethod
    def attachments_blocked(rejected: list[dict], all_unsupported: bool) -> ErrorResponse:
        code = "unsupported_file_type" if all_unsupported else "attachments_blocked_by_size_guard"
        return ErrorResponse(
            error_code=code,
            message="No attachment passed the type and size guards.",
            details=[
                ErrorDetail(
                    field=r.get("filename"),
                    message=r.get("reason", "rejected"),
                    code=r.get("reason", "rejected"),
                )
                for r in rejected
            ],
        )

    @staticmethod
    def customer_not_found(customer_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="customer_not_found",
            message=f"Customer '{customer_id}' was not found in the directory.",
        )

    @staticmethod
    def invalid_rubric() -> ErrorResponse:
        return ErrorResponse(
            error_code="invalid_rubric",
            message="rubric must be a JSON object.",
            details=[ErrorDetail(field="rubric", message="Expected an object.", code="invalid_rubric")],
        )
