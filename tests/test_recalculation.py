from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError
from models import (
    BudgetCategory,
    CurrencyCode,
    Event,
    EventStatus,
    EventType,
    Expense,
    Payment,
    PaymentKind,
    PaymentMethod,
    UserWorkspace,
)
from schemas import RecalculationOut
from services import audit_event_totals, recalculate_all_events, recalculate_event_totals

USER = "user-1"


def seed(session: Session) -> tuple[Event, BudgetCategory, BudgetCategory]:
    session.add(UserWorkspace(id=USER, email="ana@example.com", name="Ana"))
    event = Event(
        user_id=USER,
        name="Graduation",
        type=EventType.graduation,
        event_date=date(2099, 5, 20),
        # Stale values a recalculation must overwrite.
        total_budgeted_cents=1,
        total_scheduled_cents=42,
        total_spent_cents=9999,
        spent_percentage=0,
        status=EventStatus.completed,
    )
    venue = BudgetCategory(
        event=event, name="Venue", budgeted_cents=1000, scheduled_cents=5, spent_cents=77
    )
    food = BudgetCategory(
        event=event, name="Food", budgeted_cents=500, scheduled_cents=0, spent_cents=0
    )
    session.add_all([event, venue, food])
    session.flush()
    add_paid_expense(session, event, venue, 300)
    add_paid_expense(session, event, food, 450)
    session.commit()
    return event, venue, food


def add_paid_expense(
    session: Session, event: Event, category: BudgetCategory, amount: int
) -> Expense:
    expense = Expense(
        event=event,
        category=category,
        category_name=category.name,
        category_color=category.color or "#059669",
        category_icon=category.icon or "🎉",
        name=f"{category.name} bill",
        amount_cents=amount,
        currency=CurrencyCode.usd,
        date=date(2026, 1, 10),
    )
    expense.payments.append(
        Payment(
            kind=PaymentKind.one_off,
            name="Full payment",
            amount_cents=amount,
            payment_method=PaymentMethod.bank_transfer,
            due_date=date(2026, 1, 10),
            is_paid=True,
            paid_date=date(2026, 1, 10),
        )
    )
    session.add(expense)
    return expense


def test_recalculation_overwrites_stale_totals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, venue, food = seed(session)

        result = recalculate_event_totals(session, USER, event.id)

        assert venue.spent_cents == 300
        assert food.spent_cents == 450
        assert venue.scheduled_cents == 300
        assert event.total_spent_cents == 750
        assert event.total_scheduled_cents == 750
        assert event.total_budgeted_cents == 1500
        assert event.spent_percentage == 50
        assert event.status is EventStatus.under_budget
        assert result.total_spent_cents == 750
        assert result.changed is True


def test_recalculation_reports_what_changed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, venue, _ = seed(session)

        result = recalculate_event_totals(session, USER, event.id)
        changes = {(c.scope, c.entity_id, c.field): (c.before, c.after) for c in result.changes}

        assert changes[("category", venue.id, "spent_cents")] == (77, 300)
        assert changes[("event", event.id, "total_spent_cents")] == (9999, 750)
        assert changes[("event", event.id, "status")] == (
            EventStatus.completed,
            EventStatus.under_budget,
        )

        again = recalculate_event_totals(session, USER, event.id)
        assert again.changes == []


def test_recalculation_serializes_to_json() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, _, _ = seed(session)

        body = RecalculationOut.model_validate(
            recalculate_event_totals(session, USER, event.id)
        ).model_dump(mode="json")

    assert body["status"] == "under-budget"
    changes = {(c["scope"], c["field"]): (c["before"], c["after"]) for c in body["changes"]}
    assert changes[("event", "status")] == ("completed", "under-budget")
    assert changes[("event", "total_spent_cents")] == (9999, 750)


def test_aggregates_are_consistent_after_recalculation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, _, _ = seed(session)
        recalculate_event_totals(session, USER, event.id)

        session.expire_all()
        stored = session.get(Event, event.id)
        assert stored.total_spent_cents == sum(c.spent_cents for c in stored.categories)
        assert stored.total_scheduled_cents == sum(
            c.scheduled_cents for c in stored.categories
        )


def test_unknown_event_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, _, _ = seed(session)

        with pytest.raises(NotFoundError):
            recalculate_event_totals(session, USER, "missing")
        with pytest.raises(NotFoundError):
            recalculate_event_totals(session, "someone-else", event.id)


def test_ids_are_required() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValueError):
            recalculate_event_totals(session, "", "event")
        with pytest.raises(ValueError):
            recalculate_event_totals(session, USER, "")


def test_expense_in_foreign_category_fails_without_writes() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, venue, _ = seed(session)
        other = Event(
            user_id=USER,
            name="Birthday",
            type=EventType.birthday,
            event_date=date(2099, 8, 1),
        )
        stray = BudgetCategory(event=other, name="Cake", budgeted_cents=100)
        session.add_all([other, stray])
        session.flush()
        add_paid_expense(session, event, stray, 50)
        session.commit()
        event_id, venue_id = event.id, venue.id

        with pytest.raises(NotFoundError):
            recalculate_event_totals(session, USER, event_id)

        session.expire_all()
        assert session.get(Event, event_id).total_spent_cents == 9999
        assert session.get(BudgetCategory, venue_id).spent_cents == 77


def test_recalculate_all_collects_per_event_errors() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, _, _ = seed(session)
        broken = Event(
            user_id=USER,
            name="Retirement",
            type=EventType.retirement,
            event_date=date(2099, 9, 1),
        )
        session.add(broken)
        session.flush()
        add_paid_expense(session, broken, session.get(BudgetCategory, event.categories[0].id), 10)
        session.commit()

        outcome = recalculate_all_events(session, USER)

        assert outcome.events_processed == 1
        assert outcome.ok is False
        assert len(outcome.errors) == 1
        assert broken.id in outcome.errors[0]


def test_audit_reports_drift_without_writing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        event, _, _ = seed(session)
        event_id = event.id

        drifts = audit_event_totals(session)

        assert [d.event_id for d in drifts] == [event_id]
        assert any(c.field == "total_spent_cents" for c in drifts[0].changes)
        session.expire_all()
        assert session.get(Event, event_id).total_spent_cents == 9999

        recalculate_event_totals(session, USER, event_id)
        assert audit_event_totals(session, USER) == []
