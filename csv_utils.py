import csv
import re
from io import StringIO
from typing import Sequence

from budget import expense_paid_cents
from models import Event

EXPORT_HEADER = [
    "Event",
    "EventDate",
    "Category",
    "Expense",
    "Date",
    "Amount",
    "Paid",
    "Currency",
    "Vendor",
    "Tags",
    "Notes",
]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^bash\s*", r"^sh\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_cents(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_expenses(events: Sequence[Event]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for event in events:
        for expense in sorted(event.expenses, key=lambda e: (e.date, e.name)):
            writer.writerow(
                [
                    sanitize_csv_value(event.name),
                    event.event_date.isoformat(),
                    sanitize_csv_value(expense.category_name),
                    sanitize_csv_value(expense.name),
                    expense.date.isoformat(),
                    format_cents(expense.amount_cents),
                    format_cents(expense_paid_cents(expense)),
                    expense.currency.value,
                    sanitize_csv_value(expense.vendor_name),
                    sanitize_csv_value(";".join(expense.tags)),
                    sanitize_csv_value(expense.notes),
                ]
            )
    return output.getvalue()
