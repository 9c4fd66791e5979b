"""Manual sync endpoints.

Triggers for reconciliation, order pulls and catalog pushes, plus the
failures dashboard (list, resolve, recover, stats). These run the engine
in-process, on the same code paths the scheduled workflows use.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.dependencies import get_sync_engine
from sync_engine import SyncEngine
from sync_engine.errors import ConnectionNotFound
from sync_engine.models import (
    CatalogPushResult,
    ErrorCategory,
    FailureFilter,
    FailureStatus,
    OrderBatchResult,
    ReconciliationRunResult,
    RecoveryRunResult,
    RecoveryStats,
    SyncFailure,
)


router = APIRouter()


class ResolveResponse(BaseModel):
    """Result of a manual resolve."""
    failure_id: int
    resolved: bool
    message: str


@router.post("/reconcile", response_model=ReconciliationRunResult)
async def run_reconciliation(
    connection_id: Optional[int] = Query(None, description="Reconcile one connection only"),
    engine: SyncEngine = Depends(get_sync_engine),
) -> ReconciliationRunResult:
    """Push ledger stock to storefronts now."""
    try:
        return await engine.run_reconciliation(connection_id)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/orders/{connection_id}", response_model=OrderBatchResult)
async def sync_orders(
    connection_id: int,
    engine: SyncEngine = Depends(get_sync_engine),
) -> OrderBatchResult:
    """Pull recent orders from a storefront and mirror them."""
    try:
        return await engine.sync_orders(connection_id)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/catalog/{connection_id}", response_model=CatalogPushResult)
async def push_catalog(
    connection_id: int,
    engine: SyncEngine = Depends(get_sync_engine),
) -> CatalogPushResult:
    """Create or update every ledger product on a storefront."""
    try:
        return await engine.push_catalog(connection_id)
    except ConnectionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/failures", response_model=List[SyncFailure])
async def list_failures(
    connection_id: Optional[int] = Query(None),
    resolved: Optional[bool] = Query(None),
    category: Optional[ErrorCategory] = Query(None),
    status: Optional[FailureStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    engine: SyncEngine = Depends(get_sync_engine),
) -> List[SyncFailure]:
    """List failures, newest first."""
    return engine.list_failures(FailureFilter(
        connection_id=connection_id,
        resolved=resolved,
        category=category,
        status=status,
        limit=limit,
    ))


@router.get("/failures/stats", response_model=RecoveryStats)
async def failure_stats(
    connection_id: Optional[int] = Query(None),
    engine: SyncEngine = Depends(get_sync_engine),
) -> RecoveryStats:
    """Failure counts and auto-recovery rate."""
    return engine.recovery_stats(connection_id)


@router.post("/failures/recover", response_model=RecoveryRunResult)
async def recover_failures(
    failure_id: Optional[int] = Query(None),
    connection_id: Optional[int] = Query(None),
    engine: SyncEngine = Depends(get_sync_engine),
) -> RecoveryRunResult:
    """Run a recovery pass now (one failure, or every recoverable one)."""
    return await engine.recover_failures(failure_id=failure_id, connection_id=connection_id)


@router.post("/failures/{failure_id}/resolve", response_model=ResolveResponse)
async def resolve_failure(
    failure_id: int,
    engine: SyncEngine = Depends(get_sync_engine),
) -> ResolveResponse:
    """Manual override: mark a failure resolved."""
    if engine.get_failure(failure_id) is None:
        raise HTTPException(status_code=404, detail="Failure not found")
    if engine.resolve_failure(failure_id):
        return ResolveResponse(failure_id=failure_id, resolved=True, message="Failure resolved")
    return ResolveResponse(failure_id=failure_id, resolved=True, message="Failure was already resolved")
