"""
Order status transition policies. The manager asks the configured policy before every status write.
The storefront has always accepted any-to-any transitions, so that stays the default; forward_only is
the opt-in stricter lifecycle.
"""
from typing import Callable

from cardshop.models import OrderStatus

TransitionPolicy = Callable[[OrderStatus, OrderStatus], bool]

# Current status -> statuses it may move to under forward_only
FORWARD_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PRODUCTION, OrderStatus.CANCELLED}),
    OrderStatus.PRODUCTION: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),  # terminal
    OrderStatus.CANCELLED: frozenset(),  # terminal
}


def allow_all(current: OrderStatus, new: OrderStatus) -> bool:
    return True


def forward_only(current: OrderStatus, new: OrderStatus) -> bool:
    """True if new follows current in the lifecycle. Re-applying the current status is a no-op."""
    if current == new:
        return True
    return new in FORWARD_TRANSITIONS.get(current, frozenset())


POLICIES: dict[str, TransitionPolicy] = {
    "permissive": allow_all,
    "forward_only": forward_only,
}


def policy_for(name: str) -> TransitionPolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown transition policy: {name}") from None
