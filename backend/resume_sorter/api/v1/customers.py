"""
Tenant settings and operations routers.

  GET  /customers/rubric?customerId=...          read a tenant rubric
  POST /customers/rubric                         upsert a tenant rubric
  POST /admin/customers/{id}/billing-status      X-Admin-Secret
  GET  /admin/nightly-run                        X-Admin-Secret
  GET  /debug/customers                          DEBUG_ROUTES_ENABLED only
"""

from __future__ import annotations

import dataclasses
import logging

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from resume_sorter.api.dependencies import Directory, Nightly, Rubrics, require_admin_secret
from resume_sorter.directory.billing import ALLOWED_STATUSES, BLOCKED_STATUSES
from resume_sorter.directory.customers import CustomerNotFoundError, DirectoryError
from resume_sorter.schemas.intake import (
    BillingStatusUpdate,
    ErrorDetail,
    ErrorResponse,
    IntakeErrors,
    RubricUpsertRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Customers"])
admin_router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin_secret)],
)
debug_router = APIRouter(prefix="/debug", tags=["Debug"])

KNOWN_STATUSES = ALLOWED_STATUSES | BLOCKED_STATUSES


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Rubrics
# ---------------------------------------------------------------------------

@router.post(
    "/customers/rubric",
    summary="Create or replace a tenant's scoring rubric",
    responses={400: {"model": ErrorResponse, "description": "rubric is not a JSON object"}},
)
async def upsert_rubric(body: RubricUpsertRequest, rubrics: Rubrics) -> JSONResponse:
    customer_id = body.customer_id.strip()
    if not customer_id:
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.missing_field("customerId"))
    if not isinstance(body.rubric, dict):
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.invalid_rubric())

    try:
        await rubrics.upsert(customer_id, body.rubric)
    except Exception as exc:
        logger.exception("Rubric save failed | customer=%s", customer_id)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            IntakeErrors.upstream_error("rubric_save_failed", str(exc)),
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"ok": True, "customerId": customer_id})


@router.get("/customers/rubric", summary="Fetch a tenant's scoring rubric")
async def get_rubric(
    rubrics:     Rubrics,
    customer_id: str | None = Query(None, alias="customerId"),
) -> JSONResponse:
    customer_id = (customer_id or "").strip()
    if not customer_id:
        return _error(status.HTTP_400_BAD_REQUEST, IntakeErrors.missing_field("customerId"))

    try:
        rubric = await rubrics.get(customer_id)
    except Exception as exc:
        logger.exception("Rubric read failed | customer=%s", customer_id)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            IntakeErrors.upstream_error("rubric_get_failed", str(exc)),
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"ok": True, "customerId": customer_id, "rubric": rubric},
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@admin_router.post(
    "/customers/{customer_id}/billing-status",
    summary="Set a customer's billing status in the master sheet",
    responses={
        400: {"model": ErrorResponse, "description": "Unknown status"},
        401: {"model": ErrorResponse, "description": "X-Admin-Secret mismatch"},
        404: {"model": ErrorResponse, "description": "Customer not in directory"},
        502: {"model": ErrorResponse, "description": "Directory write failed"},
    },
)
async def update_billing_status(
    customer_id: str,
    body:        BillingStatusUpdate,
    directory:   Directory,
) -> JSONResponse:
    new_status = body.status.strip().lower()
    if new_status not in KNOWN_STATUSES:
        return _error(
            status.HTTP_400_BAD_REQUEST,
            ErrorResponse(
                error_code="invalid_status",
                message=f"Unknown billing status '{new_status}'.",
                details=[
                    ErrorDetail(
                        field="status",
                        message=f"Allowed: {', '.join(sorted(KNOWN_STATUSES))}.",
                        code="invalid_status",
                    )
                ],
            ),
        )

    try:
        await directory.update_billing_status(customer_id, new_status)
    except CustomerNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, IntakeErrors.customer_not_found(customer_id))
    except DirectoryError as exc:
        logger.error("Billing status update failed | customer=%s error=%s", customer_id, exc)
        return _error(status.HTTP_502_BAD_GATEWAY, IntakeErrors.upstream_error("directory_write_failed", str(exc)))

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"ok": True, "customerId": customer_id, "billingStatus": new_status},
    )


@admin_router.get("/nightly-run", summary="Run the nightly trial sweep and daily reports")
async def nightly_run(job: Nightly) -> JSONResponse:
    try:
        report = await job.run()
    except DirectoryError as exc:
        logger.error("Nightly run failed | error=%s", exc)
        return _error(status.HTTP_502_BAD_GATEWAY, IntakeErrors.upstream_error("directory_read_failed", str(exc)))
    return JSONResponse(status_code=status.HTTP_200_OK, content=report.as_dict())


# ---------------------------------------------------------------------------
# Debug (mounted only when DEBUG_ROUTES_ENABLED=true)
# ---------------------------------------------------------------------------

@debug_router.get("/customers", summary="Dump the cached customer directory")
async def debug_customers(directory: Directory) -> JSONResponse:
    try:
        customers = await directory.list_customers()
    except DirectoryError as exc:
        return _error(status.HTTP_502_BAD_GATEWAY, IntakeErrors.upstream_error("directory_read_failed", str(exc)))
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "ok":        True,
            "count":     len(customers),
            "customers": [dataclasses.asdict(c) for c in customers],
        },
    )
