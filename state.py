"""Client-side session and per-event view state over the query cache."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from backends import BudgetBackend
from budget import (
    CategoryDeletionCheck,
    CategoryPaymentStats,
    CategorySummary,
    EventTotals,
    PaymentProgress,
    category_payment_stats,
    check_category_deletion,
    payment_status,
    summarize_category,
    summarize_event,
)
from cache import QueryClient, QueryKey
from errors import ErrorKind, classify_error, user_message
from invalidation import QueryKeys
from mutations import is_temp_id
from retry import CATEGORY_LOAD_RETRY, READ_RETRY, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


class SessionState:
    """Who is signed in. Switching users drops every cached query."""

    def __init__(self, client: QueryClient) -> None:
        self.client = client
        self.identity = Identity()
        self._listeners: list[Callable[[Identity], None]] = []

    def sign_in(self, user_id: str, email: Optional[str] = None) -> Identity:
        if not user_id:
            raise ValueError("User ID is required")
        if self.identity.user_id not in (None, user_id):
            self.client.clear()
        self.identity = Identity(user_id=user_id, email=email)
        logger.info(f"session_signed_in: user={user_id}")
        self._notify()
        return self.identity

    def sign_out(self) -> None:
        user_id = self.identity.user_id
        self.client.clear()
        self.identity = Identity()
        logger.info(f"session_signed_out: user={user_id}")
        self._notify()

    def refresh(self) -> list[QueryKey]:
        """Mark every query of the signed-in user stale and refetch what is registered."""
        user_id = self.require_user()
        return [
            key for key in self.client.invalidate_queries() if user_id in key
        ]

    def require_user(self) -> str:
        if not self.identity.is_authenticated:
            raise PermissionError("Sign in to continue")
        return self.identity.user_id

    def subscribe(self, listener: Callable[[Identity], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.identity)


class ViewState(str, Enum):
    loading = "loading"
    error = "error"
    not_found = "not-found"
    ready = "ready"


def _retrying(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]],
) -> Callable[[], Awaitable[Any]]:
    async def fetch() -> Any:
        result = await with_retry(operation, policy, sleep=sleep)
        if not result.ok:
            raise result.error
        return result.value

    return fetch


class EventContext:
    """Reads and derived figures for one event.

    Fetchers are registered on the client, so invalidations after a
    mutation refetch these keys in the background.
    """

    def __init__(
        self,
        client: QueryClient,
        backend: BudgetBackend,
        session: SessionState,
        event_id: str,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        user_id = session.require_user()
        if not event_id:
            raise ValueError("Event ID is required")
        self.client = client
        self.backend = backend
        self.session = session
        self.user_id = user_id
        self.event_id = event_id

        self.event_key = QueryKeys.event(user_id, event_id)
        self.categories_key = QueryKeys.categories(user_id, event_id)
        self.expenses_key = QueryKeys.expenses(user_id, event_id)
        self.payments_key = QueryKeys.payments(user_id, event_id)

        client.register_fetcher(
            self.event_key,
            _retrying(lambda: backend.fetch_event(user_id, event_id), READ_RETRY, sleep),
        )
        client.register_fetcher(
            self.categories_key,
            _retrying(
                lambda: backend.fetch_categories(user_id, event_id), CATEGORY_LOAD_RETRY, sleep
            ),
        )
        client.register_fetcher(
            self.expenses_key,
            _retrying(lambda: backend.fetch_expenses(user_id, event_id), READ_RETRY, sleep),
        )
        client.register_fetcher(
            self.payments_key,
            _retrying(lambda: backend.fetch_payments(user_id, event_id), READ_RETRY, sleep),
        )

    @property
    def keys(self) -> list[QueryKey]:
        return [self.event_key, self.categories_key, self.expenses_key, self.payments_key]

    async def load(self, *, force: bool = False) -> ViewState:
        results = await asyncio.gather(
            *(self.client.fetch_query(key, force=force) for key in self.keys),
            return_exceptions=True,
        )
        for key, result in zip(self.keys, results):
            if isinstance(result, BaseException):
                logger.warning(
                    f"event_load_failed: event={self.event_id} key={key[0]} "
                    f"error_kind={classify_error(result).value}"
                )
        return self.view_state()

    def view_state(self) -> ViewState:
        error = self.client.get_error(self.event_key)
        if error is not None and classify_error(error) is ErrorKind.not_found:
            return ViewState.not_found
        if not all(self.client.has_data(key) for key in self.keys[:3]):
            if any(self.client.get_error(key) is not None for key in self.keys):
                return ViewState.error
            return ViewState.loading
        return ViewState.ready

    def error_message(self) -> Optional[str]:
        for key in self.keys:
            error = self.client.get_error(key)
            if error is not None:
                return user_message(error, "load")
        return None

    # -- cached records --------------------------------------------------

    def event(self) -> Optional[Record]:
        return self.client.get_query_data(self.event_key)

    def categories(self) -> list[Record]:
        return self.client.get_query_data(self.categories_key) or []

    def expenses(self) -> list[Record]:
        return self.client.get_query_data(self.expenses_key) or []

    def payments(self) -> list[Record]:
        return self.client.get_query_data(self.payments_key) or []

    def expenses_for_category(self, category_id: str) -> list[Record]:
        return [e for e in self.expenses() if e.get("category_id") == category_id]

    def has_pending_writes(self) -> bool:
        records = self.categories() + self.expenses()
        return any(is_temp_id(record.get("id")) for record in records)

    # -- derived ---------------------------------------------------------

    def _event_date(self) -> Optional[date]:
        event = self.event()
        if not event or not event.get("event_date"):
            return None
        return date.fromisoformat(event["event_date"])

    def category_summaries(self) -> list[CategorySummary]:
        return [summarize_category(category) for category in self.categories()]

    def event_totals(self, today: Optional[date] = None) -> EventTotals:
        return summarize_event(
            self.categories(), event_date=self._event_date(), today=today or date.today()
        )

    def payment_progress(self, expense_id: str, today: Optional[date] = None) -> PaymentProgress:
        for expense in self.expenses():
            if expense.get("id") == expense_id:
                return payment_status(expense, today)
        raise KeyError(expense_id)

    def category_payment_stats(
        self, category_id: str, today: Optional[date] = None
    ) -> CategoryPaymentStats:
        return category_payment_stats(self.expenses_for_category(category_id), today)

    def deletion_check(self, category_id: str) -> CategoryDeletionCheck:
        category = next((c for c in self.categories() if c.get("id") == category_id), {})
        return check_category_deletion(category, self.expenses_for_category(category_id))
