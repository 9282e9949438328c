"""Backends the client data layer talks to.

Both return plain JSON-shaped dicts, which is what the query cache stores.
``ServiceBackend`` runs the services in-process on a worker thread;
``HttpBackend`` calls the JSON API in ``main.py``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

import requests
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal, session_scope
from errors import BackendUnavailable, NotFoundError, PreconditionFailed
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
    PaymentOut,
    PaymentScheduleIn,
    RecalculationOut,
    UpcomingPaymentOut,
    WorkspaceOut,
)
from services import (
    CategoryService,
    EventService,
    ExpenseService,
    PaymentService,
    WorkspaceService,
    recalculate_event_totals,
)

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class BudgetBackend(Protocol):
    async def fetch_workspace(self, user_id: str) -> Record: ...

    async def fetch_events(self, user_id: str) -> list[Record]: ...

    async def fetch_event(self, user_id: str, event_id: str) -> Record: ...

    async def fetch_categories(self, user_id: str, event_id: str) -> list[Record]: ...

    async def fetch_expenses(self, user_id: str, event_id: str) -> list[Record]: ...

    async def fetch_payments(self, user_id: str, event_id: str) -> list[Record]: ...

    async def fetch_upcoming_payments(self, user_id: str) -> list[Record]: ...

    async def add_event(self, user_id: str, data: Record) -> Record: ...

    async def update_event(self, user_id: str, event_id: str, data: Record) -> Record: ...

    async def delete_event(self, user_id: str, event_id: str) -> None: ...

    async def add_category(self, user_id: str, event_id: str, data: Record) -> Record: ...

    async def update_category(
        self, user_id: str, event_id: str, category_id: str, data: Record
    ) -> Record: ...

    async def delete_category(
        self, user_id: str, event_id: str, category_id: str
    ) -> None: ...

    async def add_expense(self, user_id: str, event_id: str, data: Record) -> Record: ...

    async def update_expense(
        self, user_id: str, event_id: str, expense_id: str, data: Record
    ) -> Record: ...

    async def delete_expense(self, user_id: str, event_id: str, expense_id: str) -> None: ...

    async def create_payment_schedule(
        self, user_id: str, event_id: str, expense_id: str, payments: list[Record]
    ) -> Record: ...

    async def create_single_payment(
        self, user_id: str, event_id: str, expense_id: str, payment: Record
    ) -> Record: ...

    async def mark_payment_paid(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str, data: Record
    ) -> Record: ...

    async def delete_payment(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str
    ) -> Record: ...

    async def clear_payments(self, user_id: str, event_id: str, expense_id: str) -> Record: ...

    async def recalculate_event(self, user_id: str, event_id: str) -> Record: ...


def _json(model) -> Record:
    return model.model_dump(mode="json")


class ServiceBackend:
    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory

    async def _call(self, work: Callable[[Session], Any]) -> Any:
        return await asyncio.to_thread(self._run, work)

    def _run(self, work: Callable[[Session], Any]) -> Any:
        with session_scope(self.session_factory) as session:
            return work(session)

    async def fetch_workspace(self, user_id: str) -> Record:
        return await self._call(
            lambda s: _json(WorkspaceOut.model_validate(WorkspaceService(s, user_id).get()))
        )

    async def fetch_events(self, user_id: str) -> list[Record]:
        return await self._call(
            lambda s: [
                _json(EventOut.model_validate(e))
                for e in EventService(s, user_id).list_all()
            ]
        )

    async def fetch_event(self, user_id: str, event_id: str) -> Record:
        return await self._call(
            lambda s: _json(EventOut.model_validate(EventService(s, user_id).get(event_id)))
        )

    async def fetch_categories(self, user_id: str, event_id: str) -> list[Record]:
        return await self._call(
            lambda s: [
                _json(CategoryOut.model_validate(c))
                for c in CategoryService(s, user_id).list_for_event(event_id)
            ]
        )

    async def fetch_expenses(self, user_id: str, event_id: str) -> list[Record]:
        return await self._call(
            lambda s: [
                _json(ExpenseOut.from_model(e))
                for e in ExpenseService(s, user_id).list_for_event(event_id)
            ]
        )

    async def fetch_payments(self, user_id: str, event_id: str) -> list[Record]:
        return await self._call(
            lambda s: [
                _json(PaymentOut.model_validate(p))
                for p in PaymentService(s, user_id).list_for_event(event_id)
            ]
        )

    async def fetch_upcoming_payments(self, user_id: str) -> list[Record]:
        return await self._call(
            lambda s: [
                _json(UpcomingPaymentOut.from_model(p))
                for p in PaymentService(s, user_id).upcoming()
            ]
        )

    async def add_event(self, user_id: str, data: Record) -> Record:
        payload = EventIn.model_validate(data)
        return await self._call(
            lambda s: _json(EventOut.model_validate(EventService(s, user_id).create(payload)))
        )

    async def update_event(self, user_id: str, event_id: str, data: Record) -> Record:
        payload = EventUpdate.model_validate(data)
        return await self._call(
            lambda s: _json(
                EventOut.model_validate(EventService(s, user_id).update(event_id, payload))
            )
        )

    async def delete_event(self, user_id: str, event_id: str) -> None:
        await self._call(lambda s: EventService(s, user_id).delete(event_id))

    async def add_category(self, user_id: str, event_id: str, data: Record) -> Record:
        payload = CategoryIn.model_validate(data)
        return await self._call(
            lambda s: _json(
                CategoryOut.model_validate(CategoryService(s, user_id).create(event_id, payload))
            )
        )

    async def update_category(
        self, user_id: str, event_id: str, category_id: str, data: Record
    ) -> Record:
        payload = CategoryUpdate.model_validate(data)
        return await self._call(
            lambda s: _json(
                CategoryOut.model_validate(
                    CategoryService(s, user_id).update(event_id, category_id, payload)
                )
            )
        )

    async def delete_category(self, user_id: str, event_id: str, category_id: str) -> None:
        await self._call(lambda s: CategoryService(s, user_id).delete(event_id, category_id))

    async def add_expense(self, user_id: str, event_id: str, data: Record) -> Record:
        payload = ExpenseIn.model_validate(data)
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(ExpenseService(s, user_id).create(event_id, payload))
            )
        )

    async def update_expense(
        self, user_id: str, event_id: str, expense_id: str, data: Record
    ) -> Record:
        payload = ExpenseUpdate.model_validate(data)
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(
                    ExpenseService(s, user_id).update(event_id, expense_id, payload)
                )
            )
        )

    async def delete_expense(self, user_id: str, event_id: str, expense_id: str) -> None:
        await self._call(lambda s: ExpenseService(s, user_id).delete(event_id, expense_id))

    async def create_payment_schedule(
        self, user_id: str, event_id: str, expense_id: str, payments: list[Record]
    ) -> Record:
        payload = PaymentScheduleIn.model_validate({"payments": payments})
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(
                    PaymentService(s, user_id).create_schedule(event_id, expense_id, payload)
                )
            )
        )

    async def create_single_payment(
        self, user_id: str, event_id: str, expense_id: str, payment: Record
    ) -> Record:
        payload = PaymentIn.model_validate(payment)
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(
                    PaymentService(s, user_id).create_single(event_id, expense_id, payload)
                )
            )
        )

    async def mark_payment_paid(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str, data: Record
    ) -> Record:
        payload = MarkPaidIn.model_validate(data)
        return await self._call(
            lambda s: _json(
                PaymentOut.model_validate(
                    PaymentService(s, user_id).mark_paid(
                        event_id, expense_id, payment_id, payload
                    )
                )
            )
        )

    async def delete_payment(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str
    ) -> Record:
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(
                    PaymentService(s, user_id).delete_payment(event_id, expense_id, payment_id)
                )
            )
        )

    async def clear_payments(self, user_id: str, event_id: str, expense_id: str) -> Record:
        return await self._call(
            lambda s: _json(
                ExpenseOut.from_model(PaymentService(s, user_id).clear_all(event_id, expense_id))
            )
        )

    async def recalculate_event(self, user_id: str, event_id: str) -> Record:
        return await self._call(
            lambda s: _json(
                RecalculationOut.model_validate(recalculate_event_totals(s, user_id, event_id))
            )
        )


class HttpBackend:
    """Talks to the JSON API with a bearer token.

    The API's status codes come back as the same exceptions the services
    raise, so callers classify errors the same way for both backends.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {token}"})

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        return await asyncio.to_thread(self._send, method, path, json)

    def _send(self, method: str, path: str, json: Any = None) -> Any:
        url = f"{self.base_url}/api{path}"
        try:
            response = self.http.request(method, url, json=json, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.warning(f"backend_unreachable: method={method} url={url} error={exc!r}")
            raise BackendUnavailable(f"Unable to reach {self.base_url}") from exc

        if response.status_code >= 400:
            raise _error_for(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def fetch_workspace(self, user_id: str) -> Record:
        return await self._request("GET", "/workspace")

    async def fetch_events(self, user_id: str) -> list[Record]:
        return await self._request("GET", "/events")

    async def fetch_event(self, user_id: str, event_id: str) -> Record:
        return await self._request("GET", f"/events/{event_id}")

    async def fetch_categories(self, user_id: str, event_id: str) -> list[Record]:
        return await self._request("GET", f"/events/{event_id}/categories")

    async def fetch_expenses(self, user_id: str, event_id: str) -> list[Record]:
        return await self._request("GET", f"/events/{event_id}/expenses")

    async def fetch_payments(self, user_id: str, event_id: str) -> list[Record]:
        return await self._request("GET", f"/events/{event_id}/payments")

    async def fetch_upcoming_payments(self, user_id: str) -> list[Record]:
        return await self._request("GET", "/payments/upcoming")

    async def add_event(self, user_id: str, data: Record) -> Record:
        return await self._request("POST", "/events", data)

    async def update_event(self, user_id: str, event_id: str, data: Record) -> Record:
        return await self._request("PATCH", f"/events/{event_id}", data)

    async def delete_event(self, user_id: str, event_id: str) -> None:
        await self._request("DELETE", f"/events/{event_id}")

    async def add_category(self, user_id: str, event_id: str, data: Record) -> Record:
        return await self._request("POST", f"/events/{event_id}/categories", data)

    async def update_category(
        self, user_id: str, event_id: str, category_id: str, data: Record
    ) -> Record:
        return await self._request(
            "PATCH", f"/events/{event_id}/categories/{category_id}", data
        )

    async def delete_category(self, user_id: str, event_id: str, category_id: str) -> None:
        await self._request("DELETE", f"/events/{event_id}/categories/{category_id}")

    async def add_expense(self, user_id: str, event_id: str, data: Record) -> Record:
        return await self._request("POST", f"/events/{event_id}/expenses", data)

    async def update_expense(
        self, user_id: str, event_id: str, expense_id: str, data: Record
    ) -> Record:
        return await self._request("PATCH", f"/events/{event_id}/expenses/{expense_id}", data)

    async def delete_expense(self, user_id: str, event_id: str, expense_id: str) -> None:
        await self._request("DELETE", f"/events/{event_id}/expenses/{expense_id}")

    async def create_payment_schedule(
        self, user_id: str, event_id: str, expense_id: str, payments: list[Record]
    ) -> Record:
        return await self._request(
            "PUT",
            f"/events/{event_id}/expenses/{expense_id}/payments/schedule",
            {"payments": payments},
        )

    async def create_single_payment(
        self, user_id: str, event_id: str, expense_id: str, payment: Record
    ) -> Record:
        return await self._request(
            "PUT", f"/events/{event_id}/expenses/{expense_id}/payments/single", payment
        )

    async def mark_payment_paid(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str, data: Record
    ) -> Record:
        return await self._request(
            "POST",
            f"/events/{event_id}/expenses/{expense_id}/payments/{payment_id}/paid",
            data,
        )

    async def delete_payment(
        self, user_id: str, event_id: str, expense_id: str, payment_id: str
    ) -> Record:
        return await self._request(
            "DELETE", f"/events/{event_id}/expenses/{expense_id}/payments/{payment_id}"
        )

    async def clear_payments(self, user_id: str, event_id: str, expense_id: str) -> Record:
        return await self._request(
            "DELETE", f"/events/{event_id}/expenses/{expense_id}/payments"
        )

    async def recalculate_event(self, user_id: str, event_id: str) -> Record:
        return await self._request("POST", f"/events/{event_id}/recalculate")


def _error_for(response: requests.Response) -> Exception:
    try:
        detail = response.json().get("detail", response.reason)
    except (ValueError, AttributeError):
        detail = response.text or response.reason
    if not isinstance(detail, str):
        detail = str(detail)

    status = response.status_code
    if status == 404:
        return NotFoundError(detail)
    if status == 409:
        return PreconditionFailed(detail)
    if status in (400, 422):
        return ValueError(detail)
    if status in (401, 403):
        return PermissionError(detail)
    if status >= 500:
        return BackendUnavailable(f"Server error {status}: {detail}")
    return RuntimeError(f"Unexpected response {status}: {detail}")
