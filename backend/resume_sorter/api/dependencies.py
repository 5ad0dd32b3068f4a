"""
Composed FastAPI Dependencies

The single wiring point for the process-wide collaborators. Route handlers
import from here, never constructing clients themselves, so tests can swap
any of them through app.dependency_overrides.

Shared state:
  - one GoogleSheetsClient (connection pool) for the directory and ledgers
  - one CustomerDirectory, so the TTL cache is shared by every request
  - one LedgerEngine, so the optional per-tenant locks are process-wide
"""

from __future__ import annotations

import hmac
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from resume_sorter.core.config import settings
from resume_sorter.directory.customers import CustomerDirectory
from resume_sorter.directory.sheets import GoogleSheetsClient
from resume_sorter.ledger.engine import LedgerEngine
from resume_sorter.llm.scoring import ScoringGateway
from resume_sorter.notifications.dispatcher import NotificationDispatcher, NotificationSender, ResendEmailSender
from resume_sorter.processing.extractor import TextExtractor
from resume_sorter.schemas.intake import IntakeErrors
from resume_sorter.services.audit import AuditSink
from resume_sorter.services.intake import IntakePipeline
from resume_sorter.services.nightly import NightlyJob
from resume_sorter.services.resend_inbound import ResendReceivingClient
from resume_sorter.services.rubrics import RubricStore
from resume_sorter.storage.s3 import ObjectStorageService


# ---------------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_sheets_client() -> GoogleSheetsClient:
    return GoogleSheetsClient()


@lru_cache(maxsize=1)
def get_directory() -> CustomerDirectory:
    return CustomerDirectory(get_sheets_client())


@lru_cache(maxsize=1)
def get_ledger() -> LedgerEngine:
    return LedgerEngine(get_sheets_client())


@lru_cache(maxsize=1)
def get_sender() -> NotificationSender:
    return ResendEmailSender()


@lru_cache(maxsize=1)
def get_storage() -> ObjectStorageService:
    return ObjectStorageService()


@lru_cache(maxsize=1)
def get_rubric_store() -> RubricStore:
    return RubricStore()


@lru_cache(maxsize=1)
def get_resend_client() -> ResendReceivingClient:
    return ResendReceivingClient()


@lru_cache(maxsize=1)
def get_pipeline() -> IntakePipeline:
    return IntakePipeline(
        extractor=TextExtractor(),
        directory=get_directory(),
        scorer=ScoringGateway(),
        ledger=get_ledger(),
        dispatcher=NotificationDispatcher(get_sender()),
        audit=AuditSink(),
        rubrics=get_rubric_store(),
    )


def get_nightly_job() -> NightlyJob:
    return NightlyJob(get_directory(), get_ledger(), get_sender())


async def close_clients() -> None:
    """Release pooled HTTP connections on shutdown."""
    if get_sheets_client.cache_info().currsize:
        await get_sheets_client().aclose()
    if get_resend_client.cache_info().currsize:
        await get_resend_client().aclose()


# ---------------------------------------------------------------------------
# Shared-secret guards
# ---------------------------------------------------------------------------

def _secret_matches(provided: str | None, expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided.encode(), expected.encode())


async def require_admin_secret(
    x_admin_secret: Annotated[str | None, Header(alias="X-Admin-Secret")] = None,
) -> None:
    if not settings.admin_job_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=IntakeErrors.not_configured("admin_job_secret").model_dump(mode="json"),
        )
    if not _secret_matches(x_admin_secret, settings.admin_job_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=IntakeErrors.unauthorized().model_dump(mode="json"),
        )


async def require_inbound_secret(
    x_inbound_secret: Annotated[str | None, Header(alias="X-Inbound-Secret")] = None,
) -> None:
    """No-op unless INBOUND_SECRET is configured."""
    if settings.inbound_secret and not _secret_matches(x_inbound_secret, settings.inbound_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=IntakeErrors.unauthorized().model_dump(mode="json"),
        )


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Pipeline   = Annotated[IntakePipeline,        Depends(get_pipeline)]
Storage    = Annotated[ObjectStorageService,  Depends(get_storage)]
Directory  = Annotated[CustomerDirectory,     Depends(get_directory)]
Rubrics    = Annotated[RubricStore,           Depends(get_rubric_store)]
Nightly    = Annotated[NightlyJob,            Depends(get_nightly_job)]
ResendAPI  = Annotated[ResendReceivingClient, Depends(get_resend_client)]
