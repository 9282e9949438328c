from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload, selectinload

from budget import (
    CategoryDeletionCheck,
    check_category_deletion,
    event_status,
    expense_paid_cents,
    spent_percentage,
    summarize_event,
    validate_payment_schedule,
)
from config import get_settings
from csv_utils import export_expenses
from errors import NotFoundError, PreconditionFailed
from models import (
    BudgetCategory,
    Event,
    EventStatus,
    Expense,
    Payment,
    PaymentKind,
    UserWorkspace,
)
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    EventIn,
    EventOut,
    EventUpdate,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    MarkPaidIn,
    PaymentIn,
    PaymentScheduleIn,
    PaymentUpdate,
    WorkspaceIn,
    WorkspaceOut,
    WorkspaceUpdate,
)

logger = logging.getLogger(__name__)


def today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def refresh_event_rollup(event: Event, on_date: Optional[date] = None) -> None:
    event.spent_percentage = spent_percentage(
        event.total_budgeted_cents, event.total_spent_cents
    )
    event.status = event_status(
        event.total_budgeted_cents,
        event.total_spent_cents,
        event_date=event.event_date,
        today=on_date or today(),
    )


def shift_totals(
    event: Event,
    category: Optional[BudgetCategory] = None,
    *,
    budgeted: int = 0,
    scheduled: int = 0,
    spent: int = 0,
) -> None:
    """Apply an incremental change to category and event totals, never below 0."""
    if category is not None:
        category.scheduled_cents = max(0, (category.scheduled_cents or 0) + scheduled)
        category.spent_cents = max(0, (category.spent_cents or 0) + spent)
    event.total_budgeted_cents = max(0, (event.total_budgeted_cents or 0) + budgeted)
    event.total_scheduled_cents = max(0, (event.total_scheduled_cents or 0) + scheduled)
    event.total_spent_cents = max(0, (event.total_spent_cents or 0) + spent)
    refresh_event_rollup(event)


def _clean_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for tag in tags:
        name = tag.strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        cleaned.append(name)
    return cleaned


class WorkspaceService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> UserWorkspace:
        workspace = self.session.get(UserWorkspace, self.user_id)
        if not workspace:
            raise NotFoundError("Workspace not found")
        return workspace

    def setup(self, data: WorkspaceIn) -> UserWorkspace:
        if not self.user_id:
            raise ValueError("User ID is required")
        if self.session.get(UserWorkspace, self.user_id):
            raise ValueError("Workspace already exists")
        workspace = UserWorkspace(
            id=self.user_id,
            email=data.email.strip(),
            name=data.name.strip(),
            language=data.language,
            currency=data.currency,
            created_by=self.user_id,
            updated_by=self.user_id,
        )
        self.session.add(workspace)
        self.session.commit()
        self.session.refresh(workspace)
        return workspace

    def update(self, data: WorkspaceUpdate) -> UserWorkspace:
        workspace = self.get()
        for name, value in data.model_dump(exclude_none=True).items():
            setattr(workspace, name, value.strip() if isinstance(value, str) else value)
        workspace.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(workspace)
        return workspace


    def export(self, fmt: str = "json") -> dict | str:
        """Everything the workspace owns, as a JSON document or an expense CSV."""
        workspace = self.get()
        stmt = (
            select(Event)
            .where(Event.user_id == self.user_id)
            .options(
                selectinload(Event.categories),
                selectinload(Event.expenses).selectinload(Expense.payments),
            )
            .order_by(Event.event_date.asc(), Event.created_at.asc())
        )
        events = list(self.session.scalars(stmt).all())
        logger.info(f"workspace_export: user={self.user_id} format={fmt} events={len(events)}")
        if fmt == "csv":
            return export_expenses(events)
        if fmt != "json":
            raise ValueError(f"Unsupported export format: {fmt}")
        return {
            "exported_at": datetime.now(ZoneInfo(get_settings().timezone)).isoformat(),
            "workspace": WorkspaceOut.model_validate(workspace).model_dump(mode="json"),
            "events": [
                {
                    **EventOut.model_validate(event).model_dump(mode="json"),
                    "categories": [
                        CategoryOut.model_validate(c).model_dump(mode="json")
                        for c in event.categories
                    ],
                    "expenses": [
                        ExpenseOut.from_model(e).model_dump(mode="json") for e in event.expenses
                    ],
                }
                for event in events
            ],
        }

    def replace_photo(self, url: Optional[str]) -> tuple[UserWorkspace, Optional[str]]:
        """Point the workspace at a new profile photo; returns the one it replaced."""
        workspace = self.get()
        previous = workspace.photo_url
        workspace.photo_url = url
        workspace.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(workspace)
        return workspace, previous

    def delete(self) -> list[str]:
        """Delete the workspace with all of its events.

        Returns the stored file URLs (attachments and profile photo) that
        belonged to it.
        """
        workspace = self.get()
        urls = [
            url
            for event in workspace.events
            for expense in event.expenses
            for url in expense.attachments
        ]
        if workspace.photo_url:
            urls.append(workspace.photo_url)
        event_count = len(workspace.events)
        self.session.delete(workspace)
        self.session.commit()
        logger.info(
            f"workspace_deleted: user={self.user_id} events={event_count} files={len(urls)}"
        )
        return urls


class EventService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Event]:
        stmt = (
            select(Event)
            .where(Event.user_id == self.user_id)
            .order_by(Event.event_date.asc(), Event.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, event_id: str) -> Event:
        event = self.session.get(Event, event_id)
        if not event or event.user_id != self.user_id:
            raise NotFoundError("Event not found")
        return event

    def create(self, data: EventIn) -> Event:
        WorkspaceService(self.session, self.user_id).get()
        event = Event(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            description=data.description.strip(),
            event_date=data.event_date,
            currency=data.currency,
            total_budgeted_cents=0,
            total_scheduled_cents=0,
            total_spent_cents=0,
            created_by=self.user_id,
            updated_by=self.user_id,
        )
        refresh_event_rollup(event)
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def update(self, event_id: str, data: EventUpdate) -> Event:
        event = self.get(event_id)
        changes = data.model_dump(exclude_none=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValueError("Event name is required")
        for name, value in changes.items():
            setattr(event, name, value)
        event.updated_by = self.user_id
        refresh_event_rollup(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def delete(self, event_id: str) -> list[str]:
        """Delete the event with its categories, expenses and payments.

        Returns the attachment URLs that belonged to the deleted expenses.
        """
        event = self.get(event_id)
        attachments = [url for expense in event.expenses for url in expense.attachments]
        self.session.delete(event)
        self.session.commit()
        return attachments


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _event(self, event_id: str) -> Event:
        return EventService(self.session, self.user_id).get(event_id)

    def list_for_event(self, event_id: str) -> list[BudgetCategory]:
        self._event(event_id)
        stmt = (
            select(BudgetCategory)
            .where(BudgetCategory.event_id == event_id)
            .order_by(BudgetCategory.created_at.asc(), BudgetCategory.name.asc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, event_id: str, category_id: str) -> BudgetCategory:
        self._event(event_id)
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.event_id != event_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, event_id: str, data: CategoryIn) -> BudgetCategory:
        event = self._event(event_id)
        category = BudgetCategory(
            event=event,
            name=data.name,
            description=data.description.strip(),
            icon=data.icon,
            color=data.color,
            budgeted_cents=data.budgeted_cents,
            scheduled_cents=0,
            spent_cents=0,
            created_by=self.user_id,
            updated_by=self.user_id,
        )
        self.session.add(category)
        shift_totals(event, budgeted=data.budgeted_cents)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(
        self, event_id: str, category_id: str, data: CategoryUpdate
    ) -> BudgetCategory:
        category = self.get(event_id, category_id)
        event = category.event
        changes = data.model_dump(exclude_none=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            if not changes["name"]:
                raise ValueError("Category name is required")

        if "budgeted_cents" in changes:
            delta = changes["budgeted_cents"] - category.budgeted_cents
            shift_totals(event, budgeted=delta)
        for name, value in changes.items():
            setattr(category, name, value)
        category.updated_by = self.user_id

        # Expenses carry a snapshot of the category's presentation fields.
        if {"name", "color", "icon"} & changes.keys():
            for expense in category.expenses:
                expense.category_name = category.name
                expense.category_color = category.color
                expense.category_icon = category.icon

        self.session.commit()
        self.session.refresh(category)
        return category

    def deletion_check(self, event_id: str, category_id: str) -> CategoryDeletionCheck:
        category = self.get(event_id, category_id)
        return check_category_deletion(category, category.expenses)

    def delete(self, event_id: str, category_id: str) -> None:
        category = self.get(event_id, category_id)
        check = check_category_deletion(category, category.expenses)
        if not check.can_delete:
            raise PreconditionFailed(check.message)
        event = category.event
        shift_totals(event, budgeted=-category.budgeted_cents)
        event.categories.remove(category)
        self.session.commit()


class ExpenseService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _event(self, event_id: str) -> Event:
        return EventService(self.session, self.user_id).get(event_id)

    def _category(self, event_id: str, category_id: str) -> BudgetCategory:
        return CategoryService(self.session, self.user_id).get(event_id, category_id)

    def list_for_event(self, event_id: str) -> list[Expense]:
        self._event(event_id)
        stmt = (
            select(Expense)
            .options(selectinload(Expense.payments))
            .where(Expense.event_id == event_id)
            .order_by(Expense.date.desc(), Expense.created_at.desc())
        )
        return list(self.session.scalars(stmt).all())

    def list_for_category(self, event_id: str, category_id: str) -> list[Expense]:
        self._category(event_id, category_id)
        stmt = (
            select(Expense)
            .options(selectinload(Expense.payments))
            .where(Expense.event_id == event_id, Expense.category_id == category_id)
            .order_by(Expense.date.desc(), Expense.created_at.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, event_id: str, expense_id: str) -> Expense:
        self._event(event_id)
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.event_id != event_id:
            raise NotFoundError("Expense not found")
        return expense

    def create(self, event_id: str, data: ExpenseIn) -> Expense:
        category = self._category(event_id, data.category_id)
        event = category.event
        expense = Expense(
            event=event,
            category=category,
            category_name=category.name,
            category_color=category.color,
            category_icon=category.icon,
            name=data.name,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            currency=data.currency,
            vendor_name=data.vendor.name.strip(),
            vendor_address=data.vendor.address.strip(),
            vendor_website=data.vendor.website.strip(),
            vendor_email=data.vendor.email.strip(),
            date=data.date,
            notes=data.notes.strip(),
            has_payment_schedule=False,
            created_by=self.user_id,
            updated_by=self.user_id,
        )
        expense.tags = _clean_tags(data.tags)
        expense.attachments = list(data.attachments)
        self.session.add(expense)
        shift_totals(event, category, scheduled=data.amount_cents)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def update(self, event_id: str, expense_id: str, data: ExpenseUpdate) -> Expense:
        expense = self.get(event_id, expense_id)
        event = expense.event
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        old_amount = expense.amount_cents
        new_amount = changes.get("amount_cents", old_amount)
        paid = expense_paid_cents(expense)

        if new_amount != old_amount and expense.payments:
            raise ValueError(
                "Update the payment schedule before changing the expense amount"
            )

        new_category_id = changes.get("category_id", expense.category_id)
        if new_category_id != expense.category_id:
            new_category = self._category(event_id, new_category_id)
            shift_totals(event, expense.category, scheduled=-old_amount, spent=-paid)
            shift_totals(event, new_category, scheduled=new_amount, spent=paid)
            expense.category = new_category
            expense.category_name = new_category.name
            expense.category_color = new_category.color
            expense.category_icon = new_category.icon
        elif new_amount != old_amount:
            shift_totals(event, expense.category, scheduled=new_amount - old_amount)

        vendor = changes.pop("vendor", None)
        if vendor is not None:
            expense.vendor_name = vendor["name"].strip()
            expense.vendor_address = vendor["address"].strip()
            expense.vendor_website = vendor["website"].strip()
            expense.vendor_email = vendor["email"].strip()
        if "name" in changes:
            name = changes["name"].strip()
            if not name:
                raise ValueError("Expense name is required")
            expense.name = name
        if "tags" in changes:
            expense.tags = _clean_tags(changes["tags"])
        if "attachments" in changes:
            expense.attachments = list(changes["attachments"])
        for name in ("description", "notes"):
            if name in changes:
                setattr(expense, name, changes[name].strip())
        for name in ("amount_cents", "currency", "date"):
            if name in changes:
                setattr(expense, name, changes[name])
        expense.updated_by = self.user_id

        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, event_id: str, expense_id: str) -> list[str]:
        expense = self.get(event_id, expense_id)
        attachments = expense.attachments
        shift_totals(
            expense.event,
            expense.category,
            scheduled=-expense.amount_cents,
            spent=-expense_paid_cents(expense),
        )
        category = expense.category
        expense.event.expenses.remove(expense)
        self.session.commit()
        self.session.expire(category, ["expenses"])
        return attachments

    def add_attachment(self, event_id: str, expense_id: str, url: str) -> Expense:
        expense = self.get(event_id, expense_id)
        if url not in expense.attachments:
            expense.attachments = expense.attachments + [url]
        expense.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def remove_attachment(self, event_id: str, expense_id: str, url: str) -> Expense:
        expense = self.get(event_id, expense_id)
        if url not in expense.attachments:
            raise NotFoundError("Attachment not found")
        expense.attachments = [a for a in expense.attachments if a != url]
        expense.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(expense)
        return expense


class PaymentService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _expense(self, event_id: str, expense_id: str) -> Expense:
        return ExpenseService(self.session, self.user_id).get(event_id, expense_id)

    def _payment(self, expense: Expense, payment_id: str) -> Payment:
        for payment in expense.payments:
            if payment.id == payment_id:
                return payment
        raise NotFoundError("Payment not found")

    def _new_payment(self, kind: PaymentKind, data: PaymentIn) -> Payment:
        return Payment(
            kind=kind,
            name=data.name.strip(),
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            payment_method=data.payment_method,
            due_date=data.due_date,
            is_paid=False,
            notes=data.notes.strip(),
            created_by=self.user_id,
            updated_by=self.user_id,
        )

    def _replace_payments(self, expense: Expense, payments: list[Payment]) -> None:
        paid_before = expense_paid_cents(expense)
        expense.payments.clear()
        self.session.flush()
        expense.payments.extend(payments)
        expense.updated_by = self.user_id
        shift_totals(expense.event, expense.category, spent=-paid_before)

    def list_for_event(self, event_id: str) -> list[Payment]:
        EventService(self.session, self.user_id).get(event_id)
        stmt = (
            select(Payment)
            .join(Expense, Payment.expense_id == Expense.id)
            .options(joinedload(Payment.expense))
            .where(Expense.event_id == event_id)
            .order_by(Payment.due_date.asc(), Payment.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def create_schedule(
        self, event_id: str, expense_id: str, data: PaymentScheduleIn
    ) -> Expense:
        expense = self._expense(event_id, expense_id)
        validate_payment_schedule(
            expense.amount_cents, [p.amount_cents for p in data.payments]
        )
        self._replace_payments(
            expense, [self._new_payment(PaymentKind.scheduled, p) for p in data.payments]
        )
        expense.has_payment_schedule = True
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def create_single(self, event_id: str, expense_id: str, data: PaymentIn) -> Expense:
        expense = self._expense(event_id, expense_id)
        validate_payment_schedule(expense.amount_cents, [data.amount_cents])
        self._replace_payments(expense, [self._new_payment(PaymentKind.one_off, data)])
        expense.has_payment_schedule = False
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def add_payment(self, event_id: str, expense_id: str, data: PaymentIn) -> Expense:
        """Append an installment to a schedule left short by a deletion."""
        expense = self._expense(event_id, expense_id)
        if expense.one_off_payment is not None:
            raise ValueError("Expense has a single payment; create a schedule instead")
        scheduled = sum(p.amount_cents for p in expense.payments)
        if scheduled + data.amount_cents > expense.amount_cents:
            raise ValueError(
                f"Payment schedule would total {scheduled + data.amount_cents} "
                f"but the expense amount is {expense.amount_cents}"
            )
        expense.payments.append(self._new_payment(PaymentKind.scheduled, data))
        expense.has_payment_schedule = True
        expense.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def update_payment(
        self, event_id: str, expense_id: str, payment_id: str, data: PaymentUpdate
    ) -> Payment:
        expense = self._expense(event_id, expense_id)
        payment = self._payment(expense, payment_id)
        changes = data.model_dump(exclude_none=True)

        new_amount = changes.get("amount_cents", payment.amount_cents)
        if new_amount != payment.amount_cents:
            validate_payment_schedule(
                expense.amount_cents,
                [new_amount if p is payment else p.amount_cents for p in expense.payments],
            )
            if payment.is_paid:
                shift_totals(
                    expense.event,
                    expense.category,
                    spent=new_amount - payment.amount_cents,
                )
        for name, value in changes.items():
            setattr(payment, name, value.strip() if isinstance(value, str) else value)
        payment.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def mark_paid(
        self, event_id: str, expense_id: str, payment_id: str, data: MarkPaidIn
    ) -> Payment:
        expense = self._expense(event_id, expense_id)
        payment = self._payment(expense, payment_id)
        if payment.is_paid:
            raise ValueError("Payment is already marked as paid")
        payment.is_paid = True
        payment.paid_date = data.paid_date
        payment.payment_method = data.payment_method
        if data.notes is not None:
            payment.notes = data.notes.strip()
        payment.updated_by = self.user_id
        shift_totals(expense.event, expense.category, spent=payment.amount_cents)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def delete_payment(self, event_id: str, expense_id: str, payment_id: str) -> Expense:
        expense = self._expense(event_id, expense_id)
        payment = self._payment(expense, payment_id)
        if payment.is_paid:
            shift_totals(expense.event, expense.category, spent=-payment.amount_cents)
        expense.payments.remove(payment)
        if not expense.payments:
            expense.has_payment_schedule = False
        expense.updated_by = self.user_id
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def clear_all(self, event_id: str, expense_id: str) -> Expense:
        expense = self._expense(event_id, expense_id)
        self._replace_payments(expense, [])
        expense.has_payment_schedule = False
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def upcoming(
        self, within_days: int = 30, on_date: Optional[date] = None
    ) -> list[Payment]:
        """Unpaid payments due up to ``within_days`` from now, overdue ones included."""
        horizon = (on_date or today()) + timedelta(days=within_days)
        stmt = (
            select(Payment)
            .join(Expense, Payment.expense_id == Expense.id)
            .join(Event, Expense.event_id == Event.id)
            .options(joinedload(Payment.expense))
            .where(
                Event.user_id == self.user_id,
                Payment.is_paid.is_(False),
                Payment.due_date <= horizon,
            )
            .order_by(Payment.due_date.asc(), Payment.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())


@dataclass(frozen=True)
class TotalChange:
    scope: str
    entity_id: str
    field: str
    before: object
    after: object


@dataclass
class RecalculationResult:
    event_id: str
    total_budgeted_cents: int
    total_scheduled_cents: int
    total_spent_cents: int
    spent_percentage: int
    status: EventStatus
    changes: list[TotalChange] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


@dataclass
class _DerivedTotals:
    event: Event
    categories: dict[str, tuple[int, int]]
    result: RecalculationResult


def _derive_totals(session: Session, user_id: str, event_id: str) -> _DerivedTotals:
    if not user_id:
        raise ValueError("User ID is required")
    if not event_id:
        raise ValueError("Event ID is required")

    event = session.get(Event, event_id)
    if not event or event.user_id != user_id:
        raise NotFoundError("Event not found")

    categories = {category.id: category for category in event.categories}
    sums = {category_id: [0, 0] for category_id in categories}
    for expense in event.expenses:
        if expense.category_id not in sums:
            raise NotFoundError(
                f"Category {expense.category_id} used by expense {expense.id} not found"
            )
        sums[expense.category_id][0] += expense.amount_cents or 0
        sums[expense.category_id][1] += expense_paid_cents(expense)

    totals = summarize_event(
        [
            {
                "budgeted_cents": categories[category_id].budgeted_cents,
                "scheduled_cents": scheduled,
                "spent_cents": spent,
            }
            for category_id, (scheduled, spent) in sums.items()
        ],
        event_date=event.event_date,
        today=today(),
    )

    changes: list[TotalChange] = []
    for category_id, (scheduled, spent) in sums.items():
        category = categories[category_id]
        for name, value in (("scheduled_cents", scheduled), ("spent_cents", spent)):
            before = getattr(category, name)
            if before != value:
                changes.append(TotalChange("category", category_id, name, before, value))
    for name, value in (
        ("total_budgeted_cents", totals.total_budgeted),
        ("total_scheduled_cents", totals.total_scheduled),
        ("total_spent_cents", totals.total_spent),
        ("spent_percentage", totals.spent_percentage),
        ("status", totals.status),
    ):
        before = getattr(event, name)
        if before != value:
            changes.append(TotalChange("event", event.id, name, before, value))

    return _DerivedTotals(
        event=event,
        categories={cid: (s[0], s[1]) for cid, s in sums.items()},
        result=RecalculationResult(
            event_id=event.id,
            total_budgeted_cents=totals.total_budgeted,
            total_scheduled_cents=totals.total_scheduled,
            total_spent_cents=totals.total_spent,
            spent_percentage=totals.spent_percentage,
            status=totals.status,
            changes=changes,
        ),
    )


def recalculate_event_totals(
    session: Session, user_id: str, event_id: str
) -> RecalculationResult:
    """Re-derive every total of one event from its expenses and payments.

    Reads happen first; nothing is written unless the whole derivation
    succeeds, and the writes land in a single commit.
    """
    try:
        derived = _derive_totals(session, user_id, event_id)
        event = derived.event
        for category in event.categories:
            scheduled, spent = derived.categories[category.id]
            category.scheduled_cents = scheduled
            category.spent_cents = spent
            category.updated_by = user_id
        result = derived.result
        event.total_budgeted_cents = result.total_budgeted_cents
        event.total_scheduled_cents = result.total_scheduled_cents
        event.total_spent_cents = result.total_spent_cents
        event.spent_percentage = result.spent_percentage
        event.status = result.status
        event.updated_by = user_id
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        f"event_recalculated: user={user_id} event={event_id} "
        f"spent={result.total_spent_cents} scheduled={result.total_scheduled_cents} "
        f"changes={len(result.changes)}"
    )
    return result


@dataclass
class BulkRecalculationResult:
    events_processed: int = 0
    results: list[RecalculationResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def recalculate_all_events(session: Session, user_id: str) -> BulkRecalculationResult:
    if not user_id:
        raise ValueError("User ID is required")
    outcome = BulkRecalculationResult()
    event_ids = [event.id for event in EventService(session, user_id).list_all()]
    for event_id in event_ids:
        try:
            outcome.results.append(recalculate_event_totals(session, user_id, event_id))
            outcome.events_processed += 1
        except ValueError as exc:
            outcome.errors.append(f"Event {event_id}: {exc}")
    return outcome


@dataclass(frozen=True)
class TotalsDrift:
    user_id: str
    event_id: str
    event_name: str
    changes: tuple[TotalChange, ...]


def audit_event_totals(session: Session, user_id: Optional[str] = None) -> list[TotalsDrift]:
    """Report events whose stored totals disagree with their expenses. Read only."""
    stmt = select(Event.user_id, Event.id, Event.name).order_by(Event.user_id, Event.id)
    if user_id:
        stmt = stmt.where(Event.user_id == user_id)
    drifts: list[TotalsDrift] = []
    for owner, event_id, name in session.execute(stmt).all():
        try:
            derived = _derive_totals(session, owner, event_id)
        except NotFoundError as exc:
            drifts.append(
                TotalsDrift(owner, event_id, name, (TotalChange("event", event_id, "error", None, str(exc)),))
            )
            continue
        if derived.result.changes:
            drifts.append(TotalsDrift(owner, event_id, name, tuple(derived.result.changes)))
    session.rollback()
    return drifts
