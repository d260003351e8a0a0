"""Entitlement resolution - turns a receipt set and an instant into an Entitlement.

Responsibilities:
- Evaluate each receipt's validity at a given instant
- Select the most generous eligible receipt
- Aggregate a reason when no receipt grants access

Resolution is a pure function of (receipts, as_of): it holds no state, never
raises on bad receipts and is safe to call concurrently.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from entitlement_engine.logging_config import get_logger
from entitlement_engine.models.entitlement import Entitlement, EntitlementReason
from entitlement_engine.models.receipt import PurchaseState, Receipt
from entitlement_engine.utils.timestamps import EPOCH, ensure_utc, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReceiptEvaluation:
    """Outcome of evaluating one receipt at one instant.

    For eligible receipts, reason is OWNED or GRACE and until is the effective
    boundary (None = perpetual). For ineligible receipts, reason is what the
    receipt contributes to the aggregate decision.
    """

    receipt: Receipt
    eligible: bool
    reason: EntitlementReason
    until: Optional[datetime] = None


def evaluate_receipt(receipt: Receipt, as_of: datetime) -> ReceiptEvaluation:
    """Evaluate whether a receipt alone grants access at as_of.

    A receipt that cannot be evaluated is treated as not eligible.

    Args:
        receipt: Receipt to evaluate
        as_of: Instant of evaluation

    Returns:
        ReceiptEvaluation
    """
    try:
        return _evaluate(receipt, ensure_utc(as_of))
    except Exception as e:
        logger.warning(
            "receipt_evaluation_failed",
            product_id=getattr(receipt, "product_id", None),
            error=str(e),
            error_type=type(e).__name__,
        )
        return ReceiptEvaluation(receipt, False, EntitlementReason.NO_VALID_RECEIPTS)


def _evaluate(receipt: Receipt, as_of: datetime) -> ReceiptEvaluation:
    # Refunded, pending and unspecified receipts never grant access
    if receipt.purchase_state != PurchaseState.PURCHASED:
        return ReceiptEvaluation(receipt, False, EntitlementReason.NO_VALID_RECEIPTS)

    if receipt.paused:
        return ReceiptEvaluation(receipt, False, EntitlementReason.NO_VALID_RECEIPTS)

    if receipt.awaiting_first_renewal:
        return ReceiptEvaluation(receipt, False, EntitlementReason.AWAITING_RENEWAL)

    expiry_time = receipt.expiry_time
    if expiry_time is None:
        return ReceiptEvaluation(receipt, True, EntitlementReason.OWNED, None)

    if as_of < expiry_time:
        return ReceiptEvaluation(receipt, True, EntitlementReason.OWNED, expiry_time)

    grace_period_end = receipt.grace_period_end
    if receipt.is_in_grace_period and (grace_period_end is None or as_of < grace_period_end):
        return ReceiptEvaluation(
            receipt, True, EntitlementReason.GRACE, grace_period_end or expiry_time
        )

    if receipt.auto_renewing:
        return ReceiptEvaluation(receipt, False, EntitlementReason.AWAITING_RENEWAL)
    return ReceiptEvaluation(receipt, False, EntitlementReason.EXPIRED)


def _selection_key(evaluation: ReceiptEvaluation) -> tuple:
    """Ordering of eligible receipts: most generous wins.

    Later effective-until first (perpetual beats any instant), then the latest
    purchase time, then identity so that selection is order-independent.
    """
    receipt = evaluation.receipt
    until = evaluation.until
    return (
        until is None,
        until or EPOCH,
        receipt.purchase_time,
        receipt.product_id,
        receipt.purchase_token,
    )


def _aggregate_reason(evaluations: list[ReceiptEvaluation]) -> EntitlementReason:
    reasons = {evaluation.reason for evaluation in evaluations}
    if EntitlementReason.NO_VALID_RECEIPTS in reasons:
        return EntitlementReason.NO_VALID_RECEIPTS
    if EntitlementReason.AWAITING_RENEWAL in reasons:
        return EntitlementReason.AWAITING_RENEWAL
    return EntitlementReason.EXPIRED


def resolve(receipts: Iterable[Receipt], as_of: Optional[datetime] = None) -> Entitlement:
    """Resolve the entitlement granted by a receipt set at an instant.

    Args:
        receipts: Full receipt set (any order)
        as_of: Instant of resolution (defaults to now)

    Returns:
        Entitlement. Pro when at least one receipt is eligible; the winner is
        the receipt with the latest effective-until, ties going to the latest
        purchase time.
    """
    as_of = utc_now() if as_of is None else ensure_utc(as_of)

    evaluations = [evaluate_receipt(receipt, as_of) for receipt in receipts]
    if not evaluations:
        return Entitlement.none()

    eligible = [evaluation for evaluation in evaluations if evaluation.eligible]
    if not eligible:
        reason = _aggregate_reason(evaluations)
        logger.debug(
            "entitlement_resolved",
            is_pro=False,
            reason=reason.value,
            receipt_count=len(evaluations),
            as_of=as_of.isoformat(),
        )
        return Entitlement.denied(reason)

    winner = max(eligible, key=_selection_key)
    logger.debug(
        "entitlement_resolved",
        is_pro=True,
        reason=winner.reason.value,
        product_id=winner.receipt.product_id,
        receipt_count=len(evaluations),
        eligible_count=len(eligible),
        as_of=as_of.isoformat(),
    )
    return Entitlement.granted(
        reason=winner.reason,
        since=winner.receipt.purchase_time,
        until=winner.until,
        source=winner.receipt.source,
    )
