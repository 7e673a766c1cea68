"""Deal lifecycle state machine.

Guards (compliance, chain confirmation, payout success) are checked by the
caller before asking for a move; this module only knows which moves exist.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from .errors import InvalidTransition
from .models import DealStatus


class DealEvent(str, Enum):
    APPROVE = "approve"
    VERIFY = "verify"
    PAYOUT = "payout"
    DISPUTE = "dispute"


_NON_TERMINAL = (DealStatus.CREATED, DealStatus.APPROVED, DealStatus.VERIFIED)

TRANSITIONS: dict[tuple[DealStatus, DealEvent], DealStatus] = {
    (DealStatus.CREATED, DealEvent.APPROVE): DealStatus.APPROVED,
    (DealStatus.APPROVED, DealEvent.VERIFY): DealStatus.VERIFIED,
    (DealStatus.VERIFIED, DealEvent.PAYOUT): DealStatus.PAID,
    **{(status, DealEvent.DISPUTE): DealStatus.DISPUTED for status in _NON_TERMINAL},
}

# Retried requests that land on the state they already produced.
IDEMPOTENT: set[tuple[DealStatus, DealEvent]] = {
    (DealStatus.APPROVED, DealEvent.APPROVE),
    (DealStatus.VERIFIED, DealEvent.VERIFY),
}

_EVENT_FOR_TARGET = {
    DealStatus.APPROVED: DealEvent.APPROVE,
    DealStatus.VERIFIED: DealEvent.VERIFY,
    DealStatus.PAID: DealEvent.PAYOUT,
    DealStatus.DISPUTED: DealEvent.DISPUTE,
}


def event_for_target(target: DealStatus, current: Optional[DealStatus] = None) -> DealEvent:
    """Return the event that leads to ``target``; ``current`` is reported on failure."""
    try:
        return _EVENT_FOR_TARGET[target]
    except KeyError:
        raise InvalidTransition(
            current.value if current else "*",
            target.value,
            f"No event leads to {target.value}",
        ) from None


def next_status(current: DealStatus, event: DealEvent) -> DealStatus:
    """Return the status ``event`` leads to from ``current``.

    Idempotent events return ``current`` unchanged; everything else not in
    the table raises InvalidTransition.
    """
    if (current, event) in IDEMPOTENT:
        return current
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(
            current.value,
            _target_name(event),
            f"Cannot {event.value} a deal in status {current.value}",
        )
    return target


def is_noop(current: DealStatus, target: DealStatus) -> bool:
    """True when moving to ``target`` is an idempotent repeat."""
    return current == target and (current, event_for_target(target, current)) in IDEMPOTENT


def _target_name(event: DealEvent) -> str:
    for target, ev in _EVENT_FOR_TARGET.items():
        if ev is event:
            return target.value
    return event.value
