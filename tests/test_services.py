import csv
from datetime import date, timedelta
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError, PreconditionFailed
from models import BudgetCategory, Event, EventStatus, EventType, Expense, PaymentMethod
from schemas import (
    CategoryIn,
    CategoryUpdate,
    EventIn,
    EventUpdate,
    ExpenseIn,
    ExpenseUpdate,
    MarkPaidIn,
    PaymentIn,
    PaymentScheduleIn,
    WorkspaceIn,
)
from services import (
    CategoryService,
    EventService,
    ExpenseService,
    PaymentService,
    WorkspaceService,
)

USER = "user-1"
EVENT_DATE = date(2099, 6, 1)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_event(session, budget_cents: int = 1000):
    WorkspaceService(session, USER).setup(WorkspaceIn(email="ana@example.com", name="Ana"))
    event = EventService(session, USER).create(
        EventIn(name="Wedding", type=EventType.wedding, event_date=EVENT_DATE)
    )
    category = CategoryService(session, USER).create(
        event.id, CategoryIn(name="Venue", budgeted_cents=budget_cents)
    )
    return event, category


def expense_in(category_id: str, amount_cents: int, **extra) -> ExpenseIn:
    return ExpenseIn(
        category_id=category_id,
        name=extra.pop("name", "Deposit"),
        amount_cents=amount_cents,
        date=date(2026, 3, 1),
        **extra,
    )


def payment_in(amount_cents: int, due: date, name: str = "Installment") -> PaymentIn:
    return PaymentIn(name=name, amount_cents=amount_cents, due_date=due)


def test_category_budget_flows_into_event_total() -> None:
    session = make_session()
    event, category = make_event(session, budget_cents=1000)
    services = CategoryService(session, USER)

    services.create(event.id, CategoryIn(name="Catering", budgeted_cents=500))
    assert event.total_budgeted_cents == 1500

    services.update(event.id, category.id, CategoryUpdate(budgeted_cents=400))
    assert event.total_budgeted_cents == 900


def test_new_expense_adds_to_scheduled_totals() -> None:
    session = make_session()
    event, category = make_event(session)

    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 150))

    assert expense.category_name == "Venue"
    assert category.scheduled_cents == 150
    assert category.spent_cents == 0
    assert event.total_scheduled_cents == 150
    assert event.status is EventStatus.under_budget


def test_expense_tags_are_deduplicated_case_insensitive() -> None:
    session = make_session()
    event, category = make_event(session)

    expense = ExpenseService(session, USER).create(
        event.id, expense_in(category.id, 100, tags=["Deposit", "deposit", " DEPOSIT ", "Venue"])
    )

    assert expense.tags == ["Deposit", "Venue"]


def test_paying_a_schedule_updates_spent_and_status() -> None:
    session = make_session()
    event, category = make_event(session, budget_cents=1000)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 900))
    payments = PaymentService(session, USER)

    expense = payments.create_schedule(
        event.id,
        expense.id,
        PaymentScheduleIn(
            payments=[
                payment_in(450, date(2026, 4, 1), "First"),
                payment_in(450, date(2026, 5, 1), "Second"),
            ]
        ),
    )
    assert expense.has_payment_schedule is True
    assert [p.amount_cents for p in expense.payment_schedule] == [450, 450]

    for payment in list(expense.payment_schedule):
        payments.mark_paid(
            event.id,
            expense.id,
            payment.id,
            MarkPaidIn(paid_date=date(2026, 4, 2), payment_method=PaymentMethod.cash),
        )

    assert category.spent_cents == 900
    assert event.total_spent_cents == 900
    assert event.spent_percentage == 90
    assert event.status is EventStatus.on_track


def test_schedule_must_sum_to_expense_amount() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 900))

    with pytest.raises(ValueError):
        PaymentService(session, USER).create_schedule(
            event.id,
            expense.id,
            PaymentScheduleIn(payments=[payment_in(400, date(2026, 4, 1))]),
        )


def test_marking_a_paid_payment_twice_is_rejected() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 200))
    payments = PaymentService(session, USER)
    expense = payments.create_single(event.id, expense.id, payment_in(200, date(2026, 4, 1)))
    payment_id = expense.one_off_payment.id
    paid = MarkPaidIn(paid_date=date(2026, 4, 1), payment_method=PaymentMethod.paypal)

    payments.mark_paid(event.id, expense.id, payment_id, paid)
    with pytest.raises(ValueError):
        payments.mark_paid(event.id, expense.id, payment_id, paid)
    assert category.spent_cents == 200


def test_single_payment_replaces_schedule_and_releases_paid_amount() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 600))
    payments = PaymentService(session, USER)
    expense = payments.create_schedule(
        event.id,
        expense.id,
        PaymentScheduleIn(
            payments=[payment_in(300, date(2026, 4, 1)), payment_in(300, date(2026, 5, 1))]
        ),
    )
    first = expense.payment_schedule[0]
    payments.mark_paid(
        event.id,
        expense.id,
        first.id,
        MarkPaidIn(paid_date=date(2026, 4, 1), payment_method=PaymentMethod.cash),
    )
    assert category.spent_cents == 300

    expense = payments.create_single(event.id, expense.id, payment_in(600, date(2026, 6, 1)))

    assert expense.has_payment_schedule is False
    assert expense.payment_schedule == []
    assert expense.one_off_payment.amount_cents == 600
    assert category.spent_cents == 0
    assert event.total_spent_cents == 0


def test_moving_an_expense_moves_its_totals() -> None:
    session = make_session()
    event, venue = make_event(session)
    catering = CategoryService(session, USER).create(
        event.id, CategoryIn(name="Catering", budgeted_cents=800)
    )
    expenses = ExpenseService(session, USER)
    expense = expenses.create(event.id, expense_in(venue.id, 250))

    moved = expenses.update(event.id, expense.id, ExpenseUpdate(category_id=catering.id))

    assert moved.category_name == "Catering"
    assert venue.scheduled_cents == 0
    assert catering.scheduled_cents == 250
    assert event.total_scheduled_cents == 250


def test_amount_change_applies_the_delta() -> None:
    session = make_session()
    event, category = make_event(session)
    expenses = ExpenseService(session, USER)
    expense = expenses.create(event.id, expense_in(category.id, 250))

    expenses.update(event.id, expense.id, ExpenseUpdate(amount_cents=400))

    assert category.scheduled_cents == 400
    assert event.total_scheduled_cents == 400


def test_deleting_an_expense_subtracts_scheduled_and_paid() -> None:
    session = make_session()
    event, category = make_event(session)
    expenses = ExpenseService(session, USER)
    keep = expenses.create(event.id, expense_in(category.id, 100, name="Keep"))
    drop = expenses.create(event.id, expense_in(category.id, 300, name="Drop"))
    payments = PaymentService(session, USER)
    drop = payments.create_single(event.id, drop.id, payment_in(300, date(2026, 4, 1)))
    payments.mark_paid(
        event.id,
        drop.id,
        drop.one_off_payment.id,
        MarkPaidIn(paid_date=date(2026, 4, 1), payment_method=PaymentMethod.cash),
    )

    expenses.delete(event.id, drop.id)

    assert category.scheduled_cents == 100
    assert category.spent_cents == 0
    assert event.total_spent_cents == 0
    assert [e.id for e in expenses.list_for_event(event.id)] == [keep.id]


def test_category_with_expenses_cannot_be_deleted() -> None:
    session = make_session()
    event, category = make_event(session)
    ExpenseService(session, USER).create(event.id, expense_in(category.id, 100))
    categories = CategoryService(session, USER)

    check = categories.deletion_check(event.id, category.id)
    assert check.can_delete is False
    assert check.expense_count == 1

    with pytest.raises(PreconditionFailed):
        categories.delete(event.id, category.id)
    assert categories.get(event.id, category.id).id == category.id


def test_empty_category_delete_releases_budget() -> None:
    session = make_session()
    event, category = make_event(session, budget_cents=700)
    categories = CategoryService(session, USER)

    categories.delete(event.id, category.id)

    assert event.total_budgeted_cents == 0
    assert categories.list_for_event(event.id) == []


def test_events_are_scoped_to_their_owner() -> None:
    session = make_session()
    event, _ = make_event(session)

    with pytest.raises(NotFoundError):
        EventService(session, "someone-else").get(event.id)
    assert EventService(session, "someone-else").list_all() == []


def test_event_update_and_delete_return_attachments() -> None:
    session = make_session()
    event, category = make_event(session)
    events = EventService(session, USER)
    expenses = ExpenseService(session, USER)
    expense = expenses.create(event.id, expense_in(category.id, 100))
    expenses.add_attachment(event.id, expense.id, "/attachments/u/e/receipt.pdf")

    updated = events.update(event.id, EventUpdate(name="  Reception  "))
    assert updated.name == "Reception"

    attachments = events.delete(event.id)
    assert attachments == ["/attachments/u/e/receipt.pdf"]
    assert events.list_all() == []


def test_upcoming_payments_include_overdue_and_skip_paid() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 900))
    today = date(2026, 4, 15)
    payments = PaymentService(session, USER)
    expense = payments.create_schedule(
        event.id,
        expense.id,
        PaymentScheduleIn(
            payments=[
                payment_in(300, today - timedelta(days=5), "Overdue"),
                payment_in(300, today + timedelta(days=10), "Soon"),
                payment_in(300, today + timedelta(days=90), "Later"),
            ]
        ),
    )

    upcoming = payments.upcoming(within_days=30, on_date=today)

    assert [p.name for p in upcoming] == ["Overdue", "Soon"]


def test_added_installment_cannot_exceed_expense_amount() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(event.id, expense_in(category.id, 600))
    payments = PaymentService(session, USER)
    expense = payments.create_schedule(
        event.id,
        expense.id,
        PaymentScheduleIn(
            payments=[payment_in(300, date(2026, 4, 1)), payment_in(300, date(2026, 5, 1))]
        ),
    )
    expense = payments.delete_payment(event.id, expense.id, expense.payment_schedule[1].id)
    assert len(expense.payments) == 1

    with pytest.raises(ValueError):
        payments.add_payment(event.id, expense.id, payment_in(400, date(2026, 6, 1)))
    expense = payments.add_payment(event.id, expense.id, payment_in(300, date(2026, 6, 1)))
    assert sum(p.amount_cents for p in expense.payment_schedule) == 600


def test_workspace_export_as_json_and_csv() -> None:
    session = make_session()
    event, category = make_event(session)
    expense = ExpenseService(session, USER).create(
        event.id, expense_in(category.id, 900, notes="=SUM(A1)", tags=["deposit"])
    )
    payments = PaymentService(session, USER)
    expense = payments.create_single(event.id, expense.id, payment_in(900, date(2026, 4, 1)))
    payments.mark_paid(
        event.id,
        expense.id,
        expense.one_off_payment.id,
        MarkPaidIn(paid_date=date(2026, 4, 1), payment_method=PaymentMethod.cash),
    )
    workspace = WorkspaceService(session, USER)

    document = workspace.export("json")
    assert document["workspace"]["email"] == "ana@example.com"
    (exported,) = document["events"]
    assert exported["id"] == event.id
    assert exported["status"] == "on-track"
    assert [c["name"] for c in exported["categories"]] == ["Venue"]
    assert exported["expenses"][0]["one_off_payment"]["is_paid"] is True

    rows = list(csv.reader(StringIO(workspace.export("csv"))))
    assert rows[0][:7] == ["Event", "EventDate", "Category", "Expense", "Date", "Amount", "Paid"]
    assert rows[1][:7] == ["Wedding", "2099-06-01", "Venue", "Deposit", "2026-03-01", "9.00", "9.00"]
    assert rows[1][-2:] == ["deposit", "\t=SUM(A1)"]

    with pytest.raises(ValueError):
        workspace.export("xml")


def test_workspace_delete_cascades_and_returns_files() -> None:
    session = make_session()
    event, category = make_event(session)
    expenses = ExpenseService(session, USER)
    expense = expenses.create(event.id, expense_in(category.id, 100))
    expenses.add_attachment(event.id, expense.id, "/attachments/u/e/receipt.pdf")
    workspace = WorkspaceService(session, USER)
    workspace.replace_photo("/attachments/users/user-1/me.png")

    files = workspace.delete()

    assert files == ["/attachments/u/e/receipt.pdf", "/attachments/users/user-1/me.png"]
    assert session.query(Event).count() == 0
    assert session.query(BudgetCategory).count() == 0
    assert session.query(Expense).count() == 0
    with pytest.raises(NotFoundError):
        workspace.get()


def test_replacing_the_photo_returns_the_previous_one() -> None:
    session = make_session()
    make_event(session)
    workspace = WorkspaceService(session, USER)

    updated, previous = workspace.replace_photo("/attachments/users/user-1/a.png")
    assert (updated.photo_url, previous) == ("/attachments/users/user-1/a.png", None)

    updated, previous = workspace.replace_photo(None)
    assert (updated.photo_url, previous) == (None, "/attachments/users/user-1/a.png")
