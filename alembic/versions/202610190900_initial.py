"""initial event budget schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

EVENT_TYPES = (
    "wedding",
    "graduation",
    "birthday",
    "anniversary",
    "baby-shower",
    "retirement",
    "other",
)
EVENT_STATUSES = (
    "under-budget",
    "on-track",
    "approaching-limit",
    "over-budget",
    "completed",
)
CURRENCIES = ("USD", "AUD", "PHP")
PAYMENT_METHODS = ("credit-card", "debit-card", "paypal", "bank-transfer", "cash")
PAYMENT_KINDS = ("one_off", "scheduled")


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.String(length=128)),
        sa.Column("updated_by", sa.String(length=128)),
    ]


def upgrade():
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("email", sa.String(length=254), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("language", sa.String(length=10), nullable=False),
        sa.Column(
            "currency", sa.Enum(*CURRENCIES, name="currencycode"), nullable=False
        ),
        sa.Column("photo_url", sa.String(length=500), nullable=True),
        *_audit_columns(),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.Enum(*EVENT_TYPES, name="eventtype"), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column(
            "currency", sa.Enum(*CURRENCIES, name="currencycode"), nullable=False
        ),
        sa.Column("total_budgeted_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_scheduled_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status", sa.Enum(*EVENT_STATUSES, name="eventstatus"), nullable=False
        ),
        *_audit_columns(),
    )
    op.create_index("ix_events_user_date", "events", ["user_id", "event_date"])

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "event_id",
            sa.String(length=32),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("icon", sa.String(length=16), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False),
        sa.Column("budgeted_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        *_audit_columns(),
        sa.CheckConstraint("budgeted_cents >= 0", name="ck_category_budget_positive"),
    )
    op.create_index("ix_categories_event", "categories", ["event_id"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "event_id",
            sa.String(length=32),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.String(length=32),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("category_name", sa.String(length=100), nullable=False),
        sa.Column("category_color", sa.String(length=7), nullable=False),
        sa.Column("category_icon", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "currency", sa.Enum(*CURRENCIES, name="currencycode"), nullable=False
        ),
        sa.Column("vendor_name", sa.String(length=120), nullable=False),
        sa.Column("vendor_address", sa.String(length=200), nullable=False),
        sa.Column("vendor_website", sa.String(length=200), nullable=False),
        sa.Column("vendor_email", sa.String(length=254), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("attachments_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column(
            "has_payment_schedule", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_audit_columns(),
        sa.CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )
    op.create_index(
        "ix_expenses_event_category", "expenses", ["event_id", "category_id"]
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column(
            "expense_id",
            sa.String(length=32),
            sa.ForeignKey("expenses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.Enum(*PAYMENT_KINDS, name="paymentkind"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(*PAYMENT_METHODS, name="paymentmethod"),
            nullable=False,
        ),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_date", sa.Date()),
        sa.Column("notes", sa.Text(), nullable=False),
        *_audit_columns(),
        sa.CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
    )
    op.create_index("ix_payments_expense_due", "payments", ["expense_id", "due_date"])


def downgrade():
    op.drop_index("ix_payments_expense_due", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_expenses_event_category", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_categories_event", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_events_user_date", table_name="events")
    op.drop_table("events")
    op.drop_table("workspaces")
