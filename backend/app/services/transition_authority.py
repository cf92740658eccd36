"""
Return request state machine.

Every entry point (customer, shop, admin, system) asks the same table whether
an edge is legal *and* whether the acting party may take it.
"""
from types import MappingProxyType
from typing import FrozenSet, Optional

from app.models.return_request import ReturnStatus as S
from app.models.return_request_history import ActorType as A
from app.services.errors import InvalidTransition

TRANSITIONS = MappingProxyType(
    {
        S.PENDING: MappingProxyType(
            {
                S.APPROVED: frozenset({A.SHOP}),
                S.REJECTED: frozenset({A.SHOP}),
                S.CANCELLED: frozenset({A.CUSTOMER}),
                S.ESCALATED: frozenset({A.ADMIN}),
            }
        ),
        S.APPROVED: MappingProxyType(
            {
                S.SHIPPING: frozenset({A.CUSTOMER}),
                S.CANCELLED: frozenset({A.CUSTOMER}),
            }
        ),
        S.REJECTED: MappingProxyType(
            {
                S.ESCALATED: frozenset({A.CUSTOMER}),
                S.CANCELLED: frozenset({A.CUSTOMER}),
            }
        ),
        S.ESCALATED: MappingProxyType(
            {
                S.APPROVED: frozenset({A.ADMIN}),
                S.REJECTED: frozenset({A.ADMIN}),
            }
        ),
        S.SHIPPING: MappingProxyType({S.RECEIVED: frozenset({A.SHOP})}),
        S.RECEIVED: MappingProxyType(
            {
                S.REFUNDING: frozenset({A.SHOP}),
                # goods came back in bad condition
                S.REJECTED: frozenset({A.SHOP}),
            }
        ),
        S.REFUNDING: MappingProxyType({S.REFUNDED: frozenset({A.SHOP})}),
        S.REFUNDED: MappingProxyType({S.COMPLETED: frozenset({A.SHOP, A.SYSTEM})}),
        S.COMPLETED: MappingProxyType({}),
        S.CANCELLED: MappingProxyType({}),
    }
)

TERMINAL_STATUSES = frozenset(s for s, edges in TRANSITIONS.items() if not edges)


def _status(value) -> Optional[S]:
    try:
        return S(value)
    except ValueError:
        return None


def _actor(value) -> Optional[A]:
    try:
        return A(value)
    except ValueError:
        return None


def allowed_targets(current, actor_type=None) -> FrozenSet[S]:
    """Targets reachable from ``current``, optionally restricted to one actor class."""
    edges = TRANSITIONS.get(_status(current), {})
    if actor_type is None:
        return frozenset(edges)
    actor = _actor(actor_type)
    return frozenset(to for to, actors in edges.items() if actor in actors)


def can_transition(current, target, actor_type) -> bool:
    edges = TRANSITIONS.get(_status(current))
    if not edges:
        return False
    actors = edges.get(_status(target))
    return bool(actors) and _actor(actor_type) in actors


def assert_transition(current, target, actor_type) -> None:
    if not can_transition(current, target, actor_type):
        raise InvalidTransition(
            _value(current), _value(target), _value(actor_type)
        )


def is_terminal(status) -> bool:
    return _status(status) in TERMINAL_STATUSES


def _value(v):
    return getattr(v, "value", v)
