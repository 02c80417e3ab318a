"""Inventory engine routes.

Entry points for the order lifecycle (deductible / cancelled), the admin
adjustment API, and operations endpoints for the deduction queue, low-stock
monitor and stock reconciliation.
"""

import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import sessionmaker

from brewledger.core.alerting import alert_manager
from brewledger.core.rate_limit import limiter
from brewledger.db.session import DbSession, SessionLocal
from brewledger.schemas.inventory_engine import (
    AdjustmentResultResponse,
    CancelResponse,
    CountResponse,
    DeductionJobResponse,
    FulfillmentPreviewRequest,
    FulfillmentPreviewResponse,
    IngredientUsageResponse,
    LowStockItemResponse,
    OrderUsageResponse,
    PreviewLineResponse,
    QueueStatusResponse,
    ReconciliationResponse,
    ReconciliationRowResponse,
    RetryFailedRequest,
    StockAdjustmentRequest,
    StockAdjustmentResponse,
    SweepResponse,
)
from brewledger.services.deduction_queue import DeductionQueue
from brewledger.services.low_stock_monitor import LowStockMonitor
from brewledger.services.notification_service import Notifier, get_notifier
from brewledger.services.recipe_resolver import RecipeResolver
from brewledger.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)

router = APIRouter()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_deduction_queue(
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> DeductionQueue:
    return DeductionQueue(session_factory, notifier)


Queue = Annotated[DeductionQueue, Depends(get_deduction_queue)]
NotifierDep = Annotated[Notifier, Depends(get_notifier)]


# ==================== ORDER LIFECYCLE ====================

@router.post("/orders/{order_id}/deductible", response_model=DeductionJobResponse, status_code=202)
@limiter.limit("120/minute")
def order_deductible(request: Request, order_id: str, queue: Queue):
    """Order reached a deductible state: queue its stock deduction."""
    return queue.enqueue(order_id)


@router.post("/orders/{order_id}/cancel", response_model=CancelResponse)
@limiter.limit("60/minute")
def order_cancelled(request: Request, order_id: str, queue: Queue):
    """Order was cancelled: cancel or reverse its stock deduction."""
    outcome = queue.cancel(order_id)
    return CancelResponse(order_id=outcome.order_id, status=outcome.status, reversed=outcome.reversed)


@router.get("/orders/{order_id}/job", response_model=DeductionJobResponse)
@limiter.limit("60/minute")
def get_order_job(request: Request, order_id: str, queue: Queue):
    job = queue.get_job(order_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No deduction job for order {order_id}")
    return job


@router.get("/orders/{order_id}/usage", response_model=OrderUsageResponse)
@limiter.limit("60/minute")
def get_order_usage(request: Request, order_id: str, db: DbSession):
    """Ingredients consumed by an order."""
    usage = StockLedger(db).order_usage(order_id)
    return OrderUsageResponse(
        order_id=order_id,
        deducted=bool(usage),
        items=[IngredientUsageResponse(**u.__dict__) for u in usage],
    )


# ==================== ADMIN ADJUSTMENTS ====================

@router.post(
    "/ingredients/{ingredient_id}/adjustments",
    response_model=AdjustmentResultResponse,
    status_code=201,
)
@limiter.limit("30/minute")
def adjust_ingredient(request: Request, ingredient_id: int, body: StockAdjustmentRequest, db: DbSession):
    """Manual stock adjustment or restock through the ledger."""
    result = StockLedger(db).adjust(
        ingredient_id,
        body.delta,
        reason=body.reason,
        reference_id=body.reference_id,
        note=body.note,
        performed_by=body.performed_by,
    )
    return AdjustmentResultResponse(
        already_applied=result.already_applied,
        adjustment=StockAdjustmentResponse.model_validate(result.adjustment) if result.adjustment else None,
    )


# ==================== QUEUE OPERATIONS ====================

@router.get("/queue/status", response_model=QueueStatusResponse)
@limiter.limit("60/minute")
def queue_status(request: Request, queue: Queue, limit: int = Query(20, ge=1, le=200)):
    status = queue.get_status(recent_limit=limit)
    return QueueStatusResponse(
        counts=status["counts"],
        total=status["total"],
        recent=[DeductionJobResponse.model_validate(job) for job in status["recent"]],
    )


@router.post("/queue/retry-failed", response_model=CountResponse)
@limiter.limit("10/minute")
def retry_failed_jobs(request: Request, queue: Queue, body: Optional[RetryFailedRequest] = None):
    body = body or RetryFailedRequest()
    return CountResponse(count=queue.retry_failed(include_dead_letter=body.include_dead_letter))


@router.post("/queue/cleanup", response_model=CountResponse)
@limiter.limit("10/minute")
def cleanup_queue(request: Request, queue: Queue, days: Optional[int] = Query(None, ge=0)):
    return CountResponse(count=queue.cleanup_completed(days))


# ==================== LOW STOCK ====================

@router.get("/low-stock", response_model=List[LowStockItemResponse])
@limiter.limit("60/minute")
def list_low_stock(request: Request, db: DbSession, notifier: NotifierDep):
    items = LowStockMonitor(db, notifier).list_low_stock()
    return [LowStockItemResponse(**item.model_dump()) for item in items]


@router.post("/low-stock/sweep", response_model=SweepResponse)
@limiter.limit("10/minute")
def run_low_stock_sweep(request: Request, db: DbSession, notifier: NotifierDep):
    """Run a low-stock sweep now instead of waiting for the timer."""
    result = LowStockMonitor(db, notifier).sweep()
    return SweepResponse(
        checked=result.checked,
        transitions=result.transitions,
        critical_count=result.batch.critical_count,
        low_stock_count=result.batch.low_stock_count,
        recovered=result.recovered,
    )


@router.get("/alerts")
@limiter.limit("60/minute")
def recent_alerts(
    request: Request,
    limit: int = Query(20, ge=1, le=200),
    level: Optional[str] = Query(None, pattern="^(info|warning|critical)$"),
):
    return alert_manager.get_recent(limit=limit, level=level, source="inventory")


# ==================== RECONCILIATION ====================

@router.get("/reconciliation", response_model=ReconciliationResponse)
@limiter.limit("10/minute")
def reconcile_stock(request: Request, db: DbSession):
    """Check initial stock + adjustments == current stock for every ingredient."""
    rows = StockLedger(db).reconcile(include_balanced=True)
    discrepancies = [
        ReconciliationRowResponse(
            ingredient_id=r.ingredient_id,
            name=r.name,
            initial_quantity=r.initial_quantity,
            adjustments_total=r.adjustments_total,
            expected_quantity=r.expected_quantity,
            actual_quantity=r.actual_quantity,
            difference=r.difference,
        )
        for r in rows
        if not r.balanced
    ]
    return ReconciliationResponse(checked=len(rows), balanced=not discrepancies, discrepancies=discrepancies)


@router.post("/preview", response_model=FulfillmentPreviewResponse)
@limiter.limit("60/minute")
def preview_fulfillment(request: Request, body: FulfillmentPreviewRequest, db: DbSession):
    """Can current stock cover these order lines? Reads only."""
    requirements = RecipeResolver(db).resolve_order(body.items)
    preview = StockLedger(db).preview(requirements)
    return FulfillmentPreviewResponse(
        can_fulfill=preview.can_fulfill,
        lines=[
            PreviewLineResponse(
                ingredient_id=line.ingredient_id,
                name=line.name,
                required=line.required,
                available=line.available,
                unit=line.unit,
                sufficient=line.sufficient,
            )
            for line in preview.lines
        ],
    )
