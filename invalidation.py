"""Which cached queries a successful mutation makes stale.

The policy is declared per mutation kind as key templates. It errs on the
broad side: a refetch too many is cheap, a stale total on screen is not.
The same keys are snapshotted before the optimistic apply, so a rollback
restores exactly what a commit would have invalidated.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from cache import QueryKey


class QueryKeys:
    @staticmethod
    def workspace(user_id: str) -> QueryKey:
        return ("workspace", user_id)

    @staticmethod
    def events(user_id: str) -> QueryKey:
        return ("events", user_id)

    @staticmethod
    def event(user_id: str, event_id: str) -> QueryKey:
        return ("event", user_id, event_id)

    @staticmethod
    def categories(user_id: str, event_id: str) -> QueryKey:
        return ("categories", user_id, event_id)

    @staticmethod
    def expenses(user_id: str, event_id: str) -> QueryKey:
        return ("expenses", user_id, event_id)

    @staticmethod
    def payments(user_id: str, event_id: str) -> QueryKey:
        return ("payments", user_id, event_id)

    @staticmethod
    def upcoming_payments(user_id: str) -> QueryKey:
        return ("upcoming_payments", user_id)


class MutationKind(str, Enum):
    add_event = "add_event"
    update_event = "update_event"
    delete_event = "delete_event"
    add_category = "add_category"
    update_category = "update_category"
    delete_category = "delete_category"
    add_expense = "add_expense"
    update_expense = "update_expense"
    delete_expense = "delete_expense"
    create_payment_schedule = "create_payment_schedule"
    create_single_payment = "create_single_payment"
    mark_payment_paid = "mark_payment_paid"
    delete_payment = "delete_payment"
    clear_payments = "clear_payments"
    recalculate_event = "recalculate_event"


@dataclass(frozen=True)
class MutationScope:
    user_id: str
    event_id: Optional[str] = None
    category_id: Optional[str] = None
    expense_id: Optional[str] = None


# Templates name QueryKeys builders; the builder's arguments come from the scope.
_EVENT_LIST = ("events",)
_EVENT = ("event",)
_CATEGORIES = ("categories",)
_EXPENSES = ("expenses",)
_PAYMENTS = ("payments",)
_UPCOMING = ("upcoming_payments",)

_EVENT_WIDE = _EVENT_LIST + _EVENT + _CATEGORIES + _EXPENSES + _PAYMENTS + _UPCOMING

INVALIDATION_POLICY: dict[MutationKind, tuple[str, ...]] = {
    MutationKind.add_event: _EVENT_LIST,
    MutationKind.update_event: _EVENT_LIST + _EVENT,
    MutationKind.delete_event: _EVENT_WIDE,
    MutationKind.add_category: _EVENT_LIST + _EVENT + _CATEGORIES,
    MutationKind.update_category: _EVENT_LIST + _EVENT + _CATEGORIES + _EXPENSES,
    MutationKind.delete_category: _EVENT_LIST + _EVENT + _CATEGORIES + _EXPENSES,
    MutationKind.add_expense: _EVENT_WIDE,
    MutationKind.update_expense: _EVENT_WIDE,
    MutationKind.delete_expense: _EVENT_WIDE,
    MutationKind.create_payment_schedule: _EVENT_WIDE,
    MutationKind.create_single_payment: _EVENT_WIDE,
    MutationKind.mark_payment_paid: _EVENT_WIDE,
    MutationKind.delete_payment: _EVENT_WIDE,
    MutationKind.clear_payments: _EVENT_WIDE,
    MutationKind.recalculate_event: _EVENT_LIST + _EVENT + _CATEGORIES + _EXPENSES,
}

_USER_SCOPED = {"events", "upcoming_payments", "workspace"}


def _build(template: str, scope: MutationScope) -> QueryKey:
    builder = getattr(QueryKeys, template)
    if template in _USER_SCOPED:
        return builder(scope.user_id)
    if not scope.event_id:
        raise ValueError(f"Query key {template!r} needs an event id")
    return builder(scope.user_id, scope.event_id)


def keys_for(
    kind: MutationKind,
    scope: MutationScope,
    policy: Mapping[MutationKind, tuple[str, ...]] = INVALIDATION_POLICY,
) -> list[QueryKey]:
    if not scope.user_id:
        raise ValueError("User ID is required")
    return [_build(template, scope) for template in policy[kind]]
