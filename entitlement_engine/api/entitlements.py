"""Entitlement control API for diagnostics and test orchestration.

Implements:
- GET /entitlements - Current entitlement (optionally at ?as_of_millis=)
- GET /entitlements/receipts - List stored receipts
- POST /entitlements/receipts/events - Ingest raw billing events
- POST /entitlements/events - Apply a typed billing event
- DELETE /entitlements/receipts/{product_id}/{purchase_token} - Remove a receipt
- POST /entitlements/reset - Reset all state
- POST /entitlements/time/advance - Fast-forward virtual time
- POST /entitlements/time/reset - Reset virtual time
- GET /entitlements/debug - Watcher diagnostics
"""

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from entitlement_engine.errors import InvalidReceiptError
from entitlement_engine.logging_config import get_logger, short_token
from entitlement_engine.models.api import (
    AdvanceTimeRequest,
    AdvanceTimeResponse,
    BillingEventRequest,
    BillingEventResponse,
    EntitlementResponse,
    IngestEventsRequest,
    IngestEventsResponse,
    ReceiptListResponse,
    ResetResponse,
)
from entitlement_engine.repositories.product_catalog import ProductCatalog
from entitlement_engine.repositories.receipt_store import ReceiptStore
from entitlement_engine.services.billing_events import BillingEventHandler
from entitlement_engine.services.clock import VirtualClock
from entitlement_engine.services.entitlement_watcher import EntitlementWatcher
from entitlement_engine.services.resolver import resolve
from entitlement_engine.utils.timestamps import datetime_to_millis, millis_to_datetime

logger = get_logger(__name__)
router = APIRouter(tags=["Entitlements"], prefix="/entitlements")


def _store(request: Request) -> ReceiptStore:
    return request.app.state.receipt_store


def _watcher(request: Request) -> EntitlementWatcher:
    return request.app.state.watcher


def _handler(request: Request) -> BillingEventHandler:
    return request.app.state.event_handler


def _catalog(request: Request) -> ProductCatalog:
    return request.app.state.catalog


def _virtual_clock(request: Request) -> VirtualClock:
    clock = _watcher(request).clock
    if not isinstance(clock, VirtualClock):
        raise HTTPException(
            status_code=409,
            detail={
                "error": "Virtual clock disabled",
                "message": "Set watcher.clock to 'virtual' in entitlements.yaml to control time",
            },
        )
    return clock


def _current_entitlement(request: Request) -> EntitlementResponse:
    watcher = _watcher(request)
    entitlement = watcher.current()
    as_of = watcher.clock.now()
    return EntitlementResponse.from_entitlement(entitlement, as_of, datetime_to_millis(as_of))


@router.get(
    "",
    response_model=EntitlementResponse,
    summary="Get current entitlement",
)
async def get_entitlement(
    request: Request,
    as_of_millis: Optional[int] = Query(None, ge=0, description="Resolve at this instant (Unix millis)"),
) -> EntitlementResponse:
    """Get the Pro entitlement.

    Without as_of_millis, returns the watcher's cached entitlement at the
    clock's current time. With it, resolves the stored receipts at that instant.
    """
    if as_of_millis is None:
        return _current_entitlement(request)

    try:
        as_of = millis_to_datetime(as_of_millis)
    except (OverflowError, ValueError):
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid timestamp", "message": f"Cannot resolve at {as_of_millis}"},
        )

    receipts = _catalog(request).filter_pro_receipts(_store(request).list())
    entitlement = resolve(receipts, as_of)
    logger.debug("entitlement_resolved_at", as_of=as_of.isoformat(), is_pro=entitlement.is_pro)
    return EntitlementResponse.from_entitlement(entitlement, as_of, as_of_millis)


@router.get(
    "/receipts",
    response_model=ReceiptListResponse,
    summary="List stored receipts",
)
async def list_receipts(request: Request) -> ReceiptListResponse:
    receipts = _store(request).list()
    receipts.sort(key=lambda r: (r.purchase_time, r.product_id, r.purchase_token))
    return ReceiptListResponse(receipts=[r.to_dict() for r in receipts], count=len(receipts))


@router.post(
    "/receipts/events",
    response_model=IngestEventsResponse,
    summary="Ingest raw billing events",
)
async def ingest_events(request: Request, body: IngestEventsRequest) -> IngestEventsResponse:
    """Normalize and store a batch of raw billing events.

    Invalid events are dropped and counted as rejected; they never fail the batch.
    """
    logger.info("ingest_events_request", event_count=len(body.events))

    receipts = _handler(request).process_receipts(body.events)
    rejected = len(body.events) - len(receipts)

    logger.info("ingest_events_success", accepted=len(receipts), rejected=rejected)
    return IngestEventsResponse(
        accepted=len(receipts),
        rejected=rejected,
        entitlement=_current_entitlement(request),
    )


@router.post(
    "/events",
    response_model=BillingEventResponse,
    summary="Apply a typed billing event",
)
async def apply_event(request: Request, body: BillingEventRequest) -> BillingEventResponse:
    """Apply a purchase_completed, purchase_restored, purchase_cancelled or
    subscription_expired event.

    Raises:
        400: Purchase event carries an invalid purchase
    """
    event: dict[str, Any] = body.model_dump(exclude_none=True)
    logger.info("billing_event_request", event_type=body.type)

    try:
        receipt = _handler(request).handle_event(event)
    except InvalidReceiptError as e:
        logger.warning("invalid_billing_event", event_type=body.type, error=str(e))
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid billing event", "message": str(e)},
        )

    return BillingEventResponse(
        event_type=body.type,
        receipt=receipt.to_dict() if receipt is not None else None,
        entitlement=_current_entitlement(request),
    )


@router.delete(
    "/receipts/{product_id}/{purchase_token}",
    response_model=EntitlementResponse,
    summary="Remove a receipt",
)
async def remove_receipt(request: Request, product_id: str, purchase_token: str) -> EntitlementResponse:
    """Remove a stored receipt and return the re-resolved entitlement.

    Raises:
        404: Receipt not found
    """
    if not _store(request).remove(product_id, purchase_token):
        logger.warning(
            "receipt_not_found",
            product_id=product_id,
            purchase_token=short_token(purchase_token),
        )
        raise HTTPException(
            status_code=404,
            detail={
                "error": "Receipt not found",
                "message": f"No receipt for product '{product_id}' with token {short_token(purchase_token)}",
            },
        )
    return _current_entitlement(request)


@router.post(
    "/reset",
    response_model=ResetResponse,
    summary="Reset engine state",
)
async def reset(request: Request) -> ResetResponse:
    """Delete all receipts and reset virtual time (when the clock is virtual)."""
    logger.info("reset_request")

    store = _store(request)
    receipts_deleted = store.count()
    store.clear()

    clock = _watcher(request).clock
    time_reset = isinstance(clock, VirtualClock)
    if time_reset:
        clock.reset_time()

    logger.info("reset_success", receipts_deleted=receipts_deleted, time_reset=time_reset)
    return ResetResponse(
        receipts_deleted=receipts_deleted,
        time_reset=time_reset,
        message="Engine state reset successfully",
    )


@router.post(
    "/time/advance",
    response_model=AdvanceTimeResponse,
    summary="Advance virtual time",
)
async def advance_time(request: Request, body: AdvanceTimeRequest) -> AdvanceTimeResponse:
    """Fast-forward virtual time; the entitlement is re-resolved at the new time.

    Raises:
        409: Clock is not virtual
        400: Invalid time parameters
    """
    clock = _virtual_clock(request)
    logger.info(
        "advance_time_request",
        days=body.days,
        hours=body.hours,
        minutes=body.minutes,
        seconds=body.seconds,
    )

    try:
        result = clock.advance(
            days=body.days or 0,
            hours=body.hours or 0,
            minutes=body.minutes or 0,
            seconds=body.seconds or 0,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid time advancement", "message": str(e)},
        )

    return AdvanceTimeResponse(
        previous_time_millis=result["old_time_millis"],
        current_time_millis=result["new_time_millis"],
        advanced_by_millis=result["time_advanced_millis"],
        entitlement=_current_entitlement(request),
        message=(
            f"Advanced time by {body.days or 0} days, {body.hours or 0} hours, "
            f"{body.minutes or 0} minutes, {body.seconds or 0} seconds"
        ),
    )


@router.post(
    "/time/reset",
    response_model=AdvanceTimeResponse,
    summary="Reset virtual time to real current time",
)
async def reset_time(request: Request) -> AdvanceTimeResponse:
    """Reset virtual time to the wall clock.

    Raises:
        409: Clock is not virtual
    """
    clock = _virtual_clock(request)
    logger.info("reset_time_request")

    result = clock.reset_time()
    return AdvanceTimeResponse(
        previous_time_millis=result["old_time_millis"],
        current_time_millis=result["new_time_millis"],
        advanced_by_millis=result["new_time_millis"] - result["old_time_millis"],
        entitlement=_current_entitlement(request),
        message="Virtual time reset to real time",
    )


@router.get("/debug", summary="Watcher diagnostics")
async def debug(request: Request) -> dict[str, Any]:
    """Snapshot of the watcher, clock and catalog state."""
    watcher = _watcher(request)
    clock = watcher.clock
    info = watcher.debug_info()
    info["clock"] = {
        "type": "virtual" if isinstance(clock, VirtualClock) else "system",
        "current_time_millis": datetime_to_millis(clock.now()),
        "offset_millis": (
            int(clock.offset.total_seconds() * 1000) if isinstance(clock, VirtualClock) else 0
        ),
    }
    info["pro_products"] = _catalog(request).get_all_product_ids()
    return info
