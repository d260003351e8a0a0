"""State change logging for receipts and entitlements.

Tracks receipt transitions and entitlement flips with before/after values for
debugging and auditing.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from entitlement_engine.logging_config import get_logger, short_token

if TYPE_CHECKING:
    from entitlement_engine.models.entitlement import Entitlement

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def log_receipt_transition(
    purchase_token: str,
    product_id: str,
    transition: str,
    changes: dict[str, Any],
    **extra_context: Any,
) -> None:
    """Log a receipt transition (renewal, pause, refund, ...).

    Args:
        purchase_token: Purchase token of the receipt
        product_id: Product ID of the receipt
        transition: Name of the transition applied
        changes: Fields replaced by the transition
        **extra_context: Additional context
    """
    logger.info(
        "receipt_transition",
        purchase_token=short_token(purchase_token),
        product_id=product_id,
        transition=transition,
        changes={
            key: _iso(value) if isinstance(value, datetime) else str(value)
            for key, value in changes.items()
        },
        **extra_context,
    )


def log_receipt_dropped(
    reason: str,
    event_keys: Iterable[str] = (),
    **extra_context: Any,
) -> None:
    """Log a billing event that could not be normalized into a receipt.

    Only the event's field names are logged, never its values.

    Args:
        reason: Why the event was dropped
        event_keys: Field names present on the raw event
        **extra_context: Additional context
    """
    logger.warning(
        "receipt_dropped",
        reason=reason,
        event_keys=sorted(event_keys),
        **extra_context,
    )


def log_entitlement_change(
    previous: Optional["Entitlement"],
    current: "Entitlement",
    **extra_context: Any,
) -> None:
    """Log an entitlement recompute that produced a different decision.

    Args:
        previous: Previously cached entitlement (None on first resolution)
        current: Newly resolved entitlement
        **extra_context: Additional context (receipt_count, as_of, ...)
    """
    was_pro = previous.is_pro if previous is not None else None
    if was_pro is not None and was_pro != current.is_pro:
        transition = "pro_to_free" if was_pro else "free_to_pro"
    elif previous is not None and previous.reason != current.reason:
        transition = "reason_changed"
    else:
        transition = "recomputed"

    logger.info(
        "entitlement_changed",
        transition=transition,
        old_is_pro=was_pro,
        new_is_pro=current.is_pro,
        old_reason=previous.reason.value if previous is not None else None,
        new_reason=current.reason.value,
        since=_iso(current.since),
        until=_iso(current.until),
        source=current.source,
        **extra_context,
    )
