import datetime as dt
from datetime import date
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CurrencyCode, EventStatus, EventType, PaymentKind, PaymentMethod

HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"
MAX_BUDGET_CENTS = 100_000_000


class WorkspaceIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    name: str = Field(..., min_length=1, max_length=120)
    language: str = Field(default="en", min_length=2, max_length=10)
    currency: CurrencyCode = CurrencyCode.usd


class WorkspaceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)
    currency: Optional[CurrencyCode] = None


class EventIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: EventType
    description: str = Field(default="", max_length=2000)
    event_date: date
    currency: CurrencyCode = CurrencyCode.usd

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Event name is required")
        return value


class EventUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[EventType] = None
    description: Optional[str] = Field(default=None, max_length=2000)
    event_date: Optional[date] = None
    currency: Optional[CurrencyCode] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    budgeted_cents: int = Field(default=0, ge=0, le=MAX_BUDGET_CENTS)
    color: str = Field(default="#059669", pattern=HEX_COLOR)
    icon: str = Field(default="🎉", min_length=1, max_length=16)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    budgeted_cents: Optional[int] = Field(default=None, ge=0, le=MAX_BUDGET_CENTS)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=16)


class VendorIn(BaseModel):
    name: str = Field(default="", max_length=120)
    address: str = Field(default="", max_length=200)
    website: str = Field(default="", max_length=200)
    email: str = Field(default="", max_length=254)


class ExpenseIn(BaseModel):
    category_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=120)
    description: str = Field(default="", max_length=2000)
    amount_cents: int = Field(..., gt=0)
    currency: CurrencyCode = CurrencyCode.usd
    vendor: VendorIn = Field(default_factory=VendorIn)
    date: dt.date
    notes: str = Field(default="", max_length=2000)
    tags: list[str] = Field(default_factory=list)
    attachments: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Expense name is required")
        return value


class ExpenseUpdate(BaseModel):
    category_id: Optional[str] = Field(default=None, min_length=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    currency: Optional[CurrencyCode] = None
    vendor: Optional[VendorIn] = None
    date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    tags: Optional[list[str]] = None
    attachments: Optional[list[str]] = None


class PaymentIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: str = Field(default="", max_length=500)
    amount_cents: int = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.bank_transfer
    due_date: date
    notes: str = Field(default="", max_length=1000)


class PaymentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    payment_method: Optional[PaymentMethod] = None
    due_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class PaymentScheduleIn(BaseModel):
    payments: list[PaymentIn] = Field(..., min_length=1)


class MarkPaidIn(BaseModel):
    paid_date: date
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=1000)


class RecalculateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, alias="userId")
    event_id: str = Field(..., min_length=1, alias="eventId")


class WorkspaceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    language: str
    currency: CurrencyCode
    photo_url: Optional[str] = None


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: EventType
    description: str
    event_date: date
    currency: CurrencyCode
    total_budgeted_cents: int
    total_scheduled_cents: int
    total_spent_cents: int
    spent_percentage: int
    status: EventStatus


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    name: str
    description: str
    icon: str
    color: str
    budgeted_cents: int
    scheduled_cents: int
    spent_cents: int


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    expense_id: str
    kind: PaymentKind
    name: str
    description: str
    amount_cents: int
    payment_method: PaymentMethod
    due_date: date
    is_paid: bool
    paid_date: Optional[date] = None
    notes: str


class UpcomingPaymentOut(PaymentOut):
    event_id: str
    expense_name: str
    currency: CurrencyCode

    @classmethod
    def from_model(cls, payment) -> "UpcomingPaymentOut":
        base = PaymentOut.model_validate(payment).model_dump()
        return cls(
            **base,
            event_id=payment.expense.event_id,
            expense_name=payment.expense.name,
            currency=payment.expense.currency,
        )


class VendorOut(BaseModel):
    name: str
    address: str
    website: str
    email: str


class ExpenseOut(BaseModel):
    id: str
    event_id: str
    category_id: str
    category_name: str
    category_color: str
    category_icon: str
    name: str
    description: str
    amount_cents: int
    currency: CurrencyCode
    vendor: VendorOut
    date: dt.date
    notes: str
    tags: list[str]
    attachments: list[str]
    has_payment_schedule: bool
    payment_schedule: list[PaymentOut] = Field(default_factory=list)
    one_off_payment: Optional[PaymentOut] = None

    @classmethod
    def from_model(cls, expense) -> "ExpenseOut":
        one_off = expense.one_off_payment
        return cls(
            id=expense.id,
            event_id=expense.event_id,
            category_id=expense.category_id,
            category_name=expense.category_name,
            category_color=expense.category_color,
            category_icon=expense.category_icon,
            name=expense.name,
            description=expense.description,
            amount_cents=expense.amount_cents,
            currency=expense.currency,
            vendor=VendorOut(
                name=expense.vendor_name,
                address=expense.vendor_address,
                website=expense.vendor_website,
                email=expense.vendor_email,
            ),
            date=expense.date,
            notes=expense.notes,
            tags=expense.tags,
            attachments=expense.attachments,
            has_payment_schedule=expense.has_payment_schedule,
            payment_schedule=[
                PaymentOut.model_validate(p) for p in expense.payment_schedule
            ],
            one_off_payment=PaymentOut.model_validate(one_off) if one_off else None,
        )


class TotalChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scope: str
    entity_id: str
    field: str
    before: Optional[Union[EventStatus, int, str]] = None
    after: Optional[Union[EventStatus, int, str]] = None


class RecalculationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    total_budgeted_cents: int
    total_scheduled_cents: int
    total_spent_cents: int
    spent_percentage: int
    status: EventStatus
    changes: list[TotalChangeOut] = Field(default_factory=list)
