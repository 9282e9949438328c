import json
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return uuid.uuid4().hex


class EventType(str, Enum):
    wedding = "wedding"
    graduation = "graduation"
    birthday = "birthday"
    anniversary = "anniversary"
    baby_shower = "baby-shower"
    retirement = "retirement"
    other = "other"


class EventStatus(str, Enum):
    under_budget = "under-budget"
    on_track = "on-track"
    approaching_limit = "approaching-limit"
    over_budget = "over-budget"
    completed = "completed"


class CurrencyCode(str, Enum):
    usd = "USD"
    aud = "AUD"
    php = "PHP"


CURRENCY_SYMBOLS = {
    CurrencyCode.usd: "$",
    CurrencyCode.aud: "A$",
    CurrencyCode.php: "₱",
}


class PaymentMethod(str, Enum):
    credit_card = "credit-card"
    debit_card = "debit-card"
    paypal = "paypal"
    bank_transfer = "bank-transfer"
    cash = "cash"


class PaymentKind(str, Enum):
    one_off = "one_off"
    scheduled = "scheduled"


def _values(enum_cls):
    return [member.value for member in enum_cls]


EVENT_TYPE_ENUM = SAEnum(EventType, name="eventtype", values_callable=_values)
EVENT_STATUS_ENUM = SAEnum(EventStatus, name="eventstatus", values_callable=_values)
CURRENCY_CODE_ENUM = SAEnum(CurrencyCode, name="currencycode", values_callable=_values)
PAYMENT_METHOD_ENUM = SAEnum(
    PaymentMethod, name="paymentmethod", values_callable=_values
)
PAYMENT_KIND_ENUM = SAEnum(PaymentKind, name="paymentkind", values_callable=_values)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(128))
    updated_by: Mapped[Optional[str]] = mapped_column(String(128))


class UserWorkspace(Base, TimestampMixin):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    language: Mapped[str] = mapped_column(String(10), nullable=False, default="en")
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    photo_url: Mapped[Optional[str]] = mapped_column(String(500))

    events: Mapped[list["Event"]] = relationship(
        "Event", back_populates="workspace", cascade="all, delete-orphan"
    )


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[EventType] = mapped_column(EVENT_TYPE_ENUM, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    total_budgeted_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_scheduled_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[EventStatus] = mapped_column(
        EVENT_STATUS_ENUM, nullable=False, default=EventStatus.on_track
    )

    workspace: Mapped["UserWorkspace"] = relationship(
        "UserWorkspace", back_populates="events"
    )
    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.created_at",
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense",
        back_populates="event",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_events_user_date", "user_id", "event_date"),)


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="🎉")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#059669")
    budgeted_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    event: Mapped["Event"] = relationship("Event", back_populates="categories")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        CheckConstraint("budgeted_cents >= 0", name="ck_category_budget_positive"),
        Index("ix_categories_event", "event_id"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    category_color: Mapped[str] = mapped_column(String(7), nullable=False)
    category_icon: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(CURRENCY_CODE_ENUM, nullable=False)
    vendor_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    vendor_address: Mapped[str] = mapped_column(
        String(200), nullable=False, default=""
    )
    vendor_website: Mapped[str] = mapped_column(
        String(200), nullable=False, default=""
    )
    vendor_email: Mapped[str] = mapped_column(String(254), nullable=False, default="")
    date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    attachments_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    has_payment_schedule: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    event: Mapped["Event"] = relationship("Event", back_populates="expenses")
    category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="expenses"
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="Payment.due_date",
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_event_category", "event_id", "category_id"),
    )

    @property
    def tags(self) -> list[str]:
        return json.loads(self.tags_json or "[]")

    @tags.setter
    def tags(self, value: list[str]) -> None:
        self.tags_json = json.dumps(value)

    @property
    def attachments(self) -> list[str]:
        return json.loads(self.attachments_json or "[]")

    @attachments.setter
    def attachments(self, value: list[str]) -> None:
        self.attachments_json = json.dumps(value)

    @property
    def one_off_payment(self) -> Optional["Payment"]:
        for payment in self.payments:
            if payment.kind == PaymentKind.one_off:
                return payment
        return None

    @property
    def payment_schedule(self) -> list["Payment"]:
        return [p for p in self.payments if p.kind == PaymentKind.scheduled]


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    expense_id: Mapped[str] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[PaymentKind] = mapped_column(PAYMENT_KIND_ENUM, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    expense: Mapped["Expense"] = relationship("Expense", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
        Index("ix_payments_expense_due", "expense_id", "due_date"),
    )
