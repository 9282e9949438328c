"""Pure budget arithmetic shared by the services and the client data layer.

Every function here is total: missing values and NaN count as zero, and
nothing touches the database or the cache. Records may be ORM objects,
pydantic models or plain dicts as stored in the query cache.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional, Sequence

from models import EventStatus


@dataclass(frozen=True)
class StatusThresholds:
    # Inclusive upper bounds, in percent of the budget.
    under_budget: int = 80
    on_track: int = 95
    approaching_limit: int = 100


DEFAULT_THRESHOLDS = StatusThresholds()


def _get(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, dict):
        return record.get(name, default)
    return getattr(record, name, default)


def coerce_amount(value: Any) -> float | int:
    if value is None:
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return value


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def spent_percentage(budgeted: Any, spent: Any) -> int:
    budgeted = coerce_amount(budgeted)
    spent = coerce_amount(spent)
    if budgeted <= 0:
        return 0
    return _round_half_up(spent / budgeted * 100)


def remaining_amount(budgeted: Any, spent: Any) -> float | int:
    return coerce_amount(budgeted) - coerce_amount(spent)


def budget_status(
    budgeted: Any, spent: Any, thresholds: StatusThresholds = DEFAULT_THRESHOLDS
) -> EventStatus:
    budgeted = coerce_amount(budgeted)
    spent = coerce_amount(spent)
    if budgeted <= 0:
        return EventStatus.over_budget if spent > 0 else EventStatus.on_track

    percentage = spent_percentage(budgeted, spent)
    if percentage <= thresholds.under_budget:
        return EventStatus.under_budget
    if percentage <= thresholds.on_track:
        return EventStatus.on_track
    if percentage <= thresholds.approaching_limit:
        return EventStatus.approaching_limit
    return EventStatus.over_budget


def event_status(
    budgeted: Any,
    spent: Any,
    *,
    event_date: Optional[date] = None,
    today: Optional[date] = None,
    thresholds: StatusThresholds = DEFAULT_THRESHOLDS,
) -> EventStatus:
    if event_date is not None and today is not None and event_date < today:
        return EventStatus.completed
    return budget_status(budgeted, spent, thresholds)


@dataclass(frozen=True)
class CategorySummary:
    category_id: Optional[str]
    name: str
    budgeted: int
    scheduled: int
    spent: int
    remaining: int
    percentage: int
    status: EventStatus
    is_over_budget: bool
    unscheduled: int


def summarize_category(
    category: Any, thresholds: StatusThresholds = DEFAULT_THRESHOLDS
) -> CategorySummary:
    budgeted = coerce_amount(_get(category, "budgeted_cents"))
    scheduled = coerce_amount(_get(category, "scheduled_cents"))
    spent = coerce_amount(_get(category, "spent_cents"))
    return CategorySummary(
        category_id=_get(category, "id"),
        name=_get(category, "name", "") or "",
        budgeted=budgeted,
        scheduled=scheduled,
        spent=spent,
        remaining=remaining_amount(budgeted, spent),
        percentage=spent_percentage(budgeted, spent),
        status=budget_status(budgeted, spent, thresholds),
        is_over_budget=spent > budgeted,
        unscheduled=budgeted - scheduled,
    )


@dataclass(frozen=True)
class EventTotals:
    total_budgeted: int
    total_scheduled: int
    total_spent: int
    spent_percentage: int
    status: EventStatus

    @property
    def remaining(self) -> int:
        return self.total_budgeted - self.total_spent


def summarize_event(
    categories: Iterable[Any],
    *,
    event_date: Optional[date] = None,
    today: Optional[date] = None,
    thresholds: StatusThresholds = DEFAULT_THRESHOLDS,
) -> EventTotals:
    budgeted = scheduled = spent = 0
    for category in categories:
        budgeted += coerce_amount(_get(category, "budgeted_cents"))
        scheduled += coerce_amount(_get(category, "scheduled_cents"))
        spent += coerce_amount(_get(category, "spent_cents"))
    return EventTotals(
        total_budgeted=budgeted,
        total_scheduled=scheduled,
        total_spent=spent,
        spent_percentage=spent_percentage(budgeted, spent),
        status=event_status(
            budgeted,
            spent,
            event_date=event_date,
            today=today,
            thresholds=thresholds,
        ),
    )


def _payments_of(expense: Any) -> tuple[list[Any], Optional[Any]]:
    schedule = list(_get(expense, "payment_schedule") or [])
    one_off = _get(expense, "one_off_payment")
    if _get(expense, "has_payment_schedule") and schedule:
        return schedule, None
    return [], one_off


def expense_paid_cents(expense: Any) -> int:
    schedule, one_off = _payments_of(expense)
    if schedule:
        return sum(
            coerce_amount(_get(p, "amount_cents")) for p in schedule if _get(p, "is_paid")
        )
    if one_off is not None and _get(one_off, "is_paid"):
        return coerce_amount(_get(one_off, "amount_cents"))
    return 0


def expense_scheduled_cents(expense: Any) -> int:
    return coerce_amount(_get(expense, "amount_cents"))


@dataclass
class PaymentProgress:
    has_payments: bool
    total_scheduled: int
    total_paid: int
    remaining_balance: int
    progress_percentage: float
    is_fully_paid: bool
    next_due: Optional[Any] = None
    overdue: list[Any] = field(default_factory=list)
    upcoming: list[Any] = field(default_factory=list)


def _due(payment: Any) -> date:
    due = _get(payment, "due_date")
    if isinstance(due, str):
        return date.fromisoformat(due)
    return due


def payment_status(expense: Any, today: Optional[date] = None) -> PaymentProgress:
    today = today or date.today()
    schedule, one_off = _payments_of(expense)
    if schedule:
        payments = schedule
    elif one_off is not None:
        payments = [one_off]
    else:
        payments = []

    if payments:
        total_scheduled = sum(coerce_amount(_get(p, "amount_cents")) for p in payments)
        total_paid = sum(
            coerce_amount(_get(p, "amount_cents")) for p in payments if _get(p, "is_paid")
        )
    else:
        total_scheduled = coerce_amount(_get(expense, "amount_cents"))
        total_paid = 0

    remaining = total_scheduled - total_paid
    unpaid = sorted((p for p in payments if not _get(p, "is_paid")), key=_due)
    return PaymentProgress(
        has_payments=bool(payments),
        total_scheduled=total_scheduled,
        total_paid=total_paid,
        remaining_balance=remaining,
        progress_percentage=(
            total_paid / total_scheduled * 100 if total_scheduled > 0 else 0.0
        ),
        is_fully_paid=remaining == 0,
        next_due=unpaid[0] if unpaid else None,
        overdue=[p for p in unpaid if _due(p) < today],
        upcoming=[p for p in unpaid if _due(p) >= today],
    )


@dataclass(frozen=True)
class CategoryPaymentStats:
    total_expenses: int
    fully_paid_expenses: int
    overdue_expenses: int
    pending_expenses: int
    total_scheduled: int
    total_paid: int
    total_remaining: int
    overall_progress: float


def category_payment_stats(
    expenses: Sequence[Any], today: Optional[date] = None
) -> CategoryPaymentStats:
    results = [payment_status(expense, today) for expense in expenses]
    total_scheduled = sum(r.total_scheduled for r in results)
    total_paid = sum(r.total_paid for r in results)
    fully_paid = sum(1 for r in results if r.is_fully_paid)
    return CategoryPaymentStats(
        total_expenses=len(results),
        fully_paid_expenses=fully_paid,
        overdue_expenses=sum(1 for r in results if r.overdue),
        pending_expenses=len(results) - fully_paid,
        total_scheduled=total_scheduled,
        total_paid=total_paid,
        total_remaining=total_scheduled - total_paid,
        overall_progress=(
            total_paid / total_scheduled * 100 if total_scheduled > 0 else 0.0
        ),
    )


def can_delete_category(expenses: Sequence[Any]) -> bool:
    return len(expenses) == 0


@dataclass(frozen=True)
class CategoryDeletionCheck:
    can_delete: bool
    message: str
    expense_count: int
    suggested_actions: tuple[str, ...]


def check_category_deletion(category: Any, expenses: Sequence[Any]) -> CategoryDeletionCheck:
    count = len(expenses)
    name = _get(category, "name", "") or ""
    if can_delete_category(expenses):
        return CategoryDeletionCheck(
            can_delete=True,
            message=f'Are you sure you want to delete "{name}"? This action cannot be undone.',
            expense_count=0,
            suggested_actions=("confirm-delete",),
        )
    plural = "" if count == 1 else "s"
    return CategoryDeletionCheck(
        can_delete=False,
        message=(
            f"Cannot delete this category because it contains {count} expense{plural}. "
            "Please delete or reassign the expenses first."
        ),
        expense_count=count,
        suggested_actions=("reassign-expenses", "delete-expenses"),
    )


def validate_payment_schedule(expense_amount: int, payment_amounts: Iterable[int]) -> None:
    amounts = list(payment_amounts)
    if not amounts:
        raise ValueError("At least one payment is required for a payment schedule")
    total = sum(amounts)
    if total != expense_amount:
        raise ValueError(
            f"Payment schedule totals {total} but the expense amount is {expense_amount}"
        )
