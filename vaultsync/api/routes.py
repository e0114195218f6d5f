"""
API Routes for the vaultsync engine

Command endpoints:
- POST /api/sync/property  - Mirror a ledger-confirmed asset transaction
- POST /api/sync/document  - Record a document verification request
- POST /api/sync/restore   - Re-register stored entities on the ledger

System:
- GET  /api/sync/health    - Store and ledger health

Error mapping:
    ValidationError       -> 422
    LedgerRecordNotFound  -> 404
    ConcurrencyError      -> 409
    LedgerCallFailure     -> 502
    StoreWriteFailure     -> 502
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import (
    ConcurrencyError,
    LedgerCallFailure,
    LedgerRecordNotFound,
    StoreWriteFailure,
    SyncError,
    ValidationError,
)
from ..core.service import SyncService
from ..observability import check_health
from ..schemas import DocumentSyncRequest, PropertySyncRequest


router = APIRouter(prefix="/api/sync", tags=["Sync"])


# ============================================================
# Dependency Injection
# ============================================================

def get_sync_service(request: Request) -> SyncService:
    service: Optional[SyncService] = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service not initialized",
        )
    return service


def _http_error(e: SyncError) -> HTTPException:
    """Map a sync engine error to an HTTP error."""
    if isinstance(e, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, LedgerRecordNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConcurrencyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, (LedgerCallFailure, StoreWriteFailure)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    detail: dict[str, Any] = {"error": type(e).__name__, "message": str(e)}
    if e.domain_id:
        detail["domainId"] = e.domain_id
    if e.kind:
        detail["kind"] = e.kind
    return HTTPException(status_code=code, detail=detail)


# ============================================================
# Request/Response Models
# ============================================================

class PropertySyncBody(PropertySyncRequest):
    """Asset attributes plus the confirmed transaction's hash."""
    tx_hash: str = Field(..., alias="txHash")


class DocumentSyncResponse(BaseModel):
    identity: str


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/property",
    summary="Sync a ledger-confirmed asset transaction",
)
def sync_property(
    body: PropertySyncBody,
    service: SyncService = Depends(get_sync_service),
):
    """
    Mirror an asset registration or update into the off-chain store.

    The transaction must already be mined; its receipt and block are the
    source of every chain field in the appended record.
    """
    try:
        return service.sync_property(body, body.tx_hash)
    except SyncError as e:
        raise _http_error(e) from e


@router.post(
    "/document",
    response_model=DocumentSyncResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a document verification request",
)
def sync_document(
    body: DocumentSyncRequest,
    service: SyncService = Depends(get_sync_service),
):
    try:
        return service.sync_document(body)
    except SyncError as e:
        raise _http_error(e) from e


@router.post(
    "/restore",
    summary="Restore ledger state from the off-chain store",
)
def restore(service: SyncService = Depends(get_sync_service)):
    """
    Run one restoration pass.

    Returns the run summary. Per-entity failures are reported in the
    summary, not as an HTTP error.
    """
    try:
        summary = service.restore_ledger_state()
    except SyncError as e:
        raise _http_error(e) from e
    return summary.to_dict()


# ============================================================
# System
# ============================================================

@router.get("/health", tags=["System"])
def health(service: SyncService = Depends(get_sync_service)):
    """Returns 200 if store and ledger respond, 503 otherwise."""
    health_status = check_health(service)
    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            **health_status.to_dict(),
        },
    )
