"""Optimistic writes against the query cache.

Every mutation runs the same contract:

1. validate the input and check preconditions, touching nothing;
2. cancel in-flight reads and snapshot every key the invalidation policy
   names for the mutation;
3. patch the cached values synchronously, aggregates included;
4. await the backend;
5. on success, fold the server's record in, invalidate the snapshotted
   keys and call ``on_success``; on failure, restore the snapshots and
   call ``on_error``.

Mutations are never retried, and concurrent mutations are not serialized:
the last response to land wins. When writes overlap on a key, the last one
to fail restores the value from before the first of them and invalidates
the key. A cancelled mutation rolls back like a failed one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from pydantic import ValidationError

from backends import BudgetBackend
from budget import (
    can_delete_category,
    check_category_deletion,
    event_status,
    expense_paid_cents,
    spent_percentage,
    validate_payment_schedule,
)
from cache import QueryClient, QueryKey, QuerySnapshot
from errors import ErrorKind, InvalidTransition, PreconditionFailed, classify_error, user_message
from invalidation import (
    INVALIDATION_POLICY,
    MutationKind,
    MutationScope,
    QueryKeys,
    keys_for,
)
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
)

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Callback = Optional[Callable[[Any], Any]]

_temp_ids = itertools.count(1)


def temp_id() -> str:
    return f"temp-{next(_temp_ids)}"


def is_temp_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith("temp-")


class TransactionState(str, Enum):
    idle = "idle"
    applying = "applying"
    committed = "committed"
    rolled_back = "rolled_back"


@dataclass
class _KeyWrites:
    base: QuerySnapshot
    active: set = field(default_factory=set)
    overlapped: bool = False
    committed: bool = False


class PendingWrites:
    """Optimistic transactions in flight, per cache key.

    The first transaction to open a key records the value it held before any
    optimistic patch. Later transactions on the same key snapshot a value
    that already carries the earlier patches, so their own snapshots are
    unsafe to restore.
    """

    def __init__(self) -> None:
        self._by_key: dict[QueryKey, _KeyWrites] = {}

    def open(self, key: QueryKey, txn: OptimisticTransaction, snapshot: QuerySnapshot) -> None:
        entry = self._by_key.get(key)
        if entry is None:
            self._by_key[key] = _KeyWrites(base=snapshot, active={txn})
            return
        entry.active.add(txn)
        entry.overlapped = True

    def close(self, key: QueryKey, txn: OptimisticTransaction, *, committed: bool) -> _KeyWrites:
        entry = self._by_key[key]
        entry.active.discard(txn)
        entry.committed = entry.committed or committed
        if not entry.active:
            del self._by_key[key]
        return entry

    def in_flight(self, key: QueryKey) -> int:
        entry = self._by_key.get(key)
        return len(entry.active) if entry is not None else 0


class OptimisticTransaction:
    def __init__(
        self,
        client: QueryClient,
        keys: Iterable[QueryKey],
        pending: Optional[PendingWrites] = None,
    ) -> None:
        self.client = client
        self.keys: list[QueryKey] = list(dict.fromkeys(keys))
        self.pending = pending if pending is not None else PendingWrites()
        self.state = TransactionState.idle
        self._snapshots: dict[QueryKey, QuerySnapshot] = {}

    def _require(self, expected: TransactionState, action: str) -> None:
        if self.state is not expected:
            raise InvalidTransition(f"Cannot {action} a transaction that is {self.state.value}")

    def begin(self) -> None:
        self._require(TransactionState.idle, "begin")
        for key in self.keys:
            # A slow read landing now would overwrite the optimistic value.
            self.client.cancel_queries(key)
            snapshot = self.client.snapshot(key)
            self._snapshots[key] = snapshot
            self.pending.open(key, self, snapshot)
        self.state = TransactionState.applying

    def patch(self, key: QueryKey, updater: Callable[[Any], Any]) -> bool:
        self._require(TransactionState.applying, "patch")
        if key not in self._snapshots:
            raise InvalidTransition(f"Key {key!r} was not snapshotted by this transaction")
        return self.client.update_query_data(key, updater)

    def data(self, key: QueryKey) -> Any:
        return self.client.get_query_data(key)

    def commit(self) -> list[QueryKey]:
        self._require(TransactionState.applying, "commit")
        for key in self.keys:
            self.pending.close(key, self, committed=True)
            self.client.invalidate_queries(key)
        self.state = TransactionState.committed
        return list(self.keys)

    def rollback(self) -> None:
        self._require(TransactionState.applying, "roll back")
        for key, snapshot in self._snapshots.items():
            entry = self.pending.close(key, self, committed=False)
            if not entry.overlapped:
                self.client.restore(key, snapshot)
            elif not entry.active:
                # Last overlapping write out: drop every failed patch and let
                # the server value replace whatever was committed meanwhile.
                self.client.restore(key, snapshot if entry.committed else entry.base)
                self.client.invalidate_queries(key)
            # Otherwise a write still in flight settles the key.
        self.state = TransactionState.rolled_back


@dataclass
class MutationOutcome:
    kind: MutationKind
    ok: bool
    result: Any = None
    error: Optional[BaseException] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    invalidated_keys: list[QueryKey] = field(default_factory=list)


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, str):
        return date.fromisoformat(value)
    return value


def _replace(records: list[Record], record_id: str, replacement: Record) -> list[Record]:
    return [replacement if r.get("id") == record_id else r for r in records]


def _merge(records: list[Record], record_id: str, changes: Record) -> list[Record]:
    return [{**r, **changes} if r.get("id") == record_id else r for r in records]


def _without(records: list[Record], record_id: str) -> list[Record]:
    return [r for r in records if r.get("id") != record_id]


def _find(records: Optional[list[Record]], record_id: Optional[str]) -> Optional[Record]:
    for record in records or []:
        if record.get("id") == record_id:
            return record
    return None


def _shift_category_record(
    record: Record, *, budgeted: int = 0, scheduled: int = 0, spent: int = 0
) -> Record:
    return {
        **record,
        "budgeted_cents": max(0, (record.get("budgeted_cents") or 0) + budgeted),
        "scheduled_cents": max(0, (record.get("scheduled_cents") or 0) + scheduled),
        "spent_cents": max(0, (record.get("spent_cents") or 0) + spent),
    }


def _shift_event_record(
    record: Record, *, budgeted: int = 0, scheduled: int = 0, spent: int = 0
) -> Record:
    total_budgeted = max(0, (record.get("total_budgeted_cents") or 0) + budgeted)
    total_spent = max(0, (record.get("total_spent_cents") or 0) + spent)
    return {
        **record,
        "total_budgeted_cents": total_budgeted,
        "total_scheduled_cents": max(0, (record.get("total_scheduled_cents") or 0) + scheduled),
        "total_spent_cents": total_spent,
        "spent_percentage": spent_percentage(total_budgeted, total_spent),
        "status": event_status(
            total_budgeted,
            total_spent,
            event_date=_as_date(record.get("event_date")),
            today=date.today(),
        ).value,
    }


def _payments_in(expense: Record) -> list[Record]:
    if expense.get("has_payment_schedule"):
        return list(expense.get("payment_schedule") or [])
    one_off = expense.get("one_off_payment")
    return [one_off] if one_off else []


def _with_payment(expense: Record, payment_id: str, changes: Record) -> Record:
    updated = dict(expense)
    updated["payment_schedule"] = [
        {**p, **changes} if p.get("id") == payment_id else p
        for p in expense.get("payment_schedule") or []
    ]
    one_off = expense.get("one_off_payment")
    if one_off and one_off.get("id") == payment_id:
        updated["one_off_payment"] = {**one_off, **changes}
    return updated


def _without_payment(expense: Record, payment_id: str) -> Record:
    updated = dict(expense)
    updated["payment_schedule"] = _without(expense.get("payment_schedule") or [], payment_id)
    one_off = expense.get("one_off_payment")
    if one_off and one_off.get("id") == payment_id:
        updated["one_off_payment"] = None
    if not updated["payment_schedule"] and not updated.get("one_off_payment"):
        updated["has_payment_schedule"] = False
    return updated


def _temp_payment(expense_id: str, kind: str, payment: Record) -> Record:
    return {
        **payment,
        "id": temp_id(),
        "expense_id": expense_id,
        "kind": kind,
        "is_paid": False,
        "paid_date": None,
    }


class MutationCoordinator:
    def __init__(
        self,
        client: QueryClient,
        backend: BudgetBackend,
        policy: Mapping[MutationKind, tuple[str, ...]] = INVALIDATION_POLICY,
    ) -> None:
        self.client = client
        self.backend = backend
        self.policy = policy
        self.pending = PendingWrites()

    # -- contract --------------------------------------------------------

    def _rejected(
        self, kind: MutationKind, error: BaseException, context: str
    ) -> MutationOutcome:
        logger.info(f"mutation_rejected: kind={kind.value} error={error!r}")
        return MutationOutcome(
            kind=kind,
            ok=False,
            error=error,
            error_kind=classify_error(error),
            message=user_message(error, context),
        )

    async def _run(
        self,
        kind: MutationKind,
        scope: MutationScope,
        operation: Callable[[], Awaitable[Any]],
        *,
        apply: Optional[Callable[[OptimisticTransaction], None]] = None,
        reconcile: Optional[Callable[[OptimisticTransaction, Any], None]] = None,
        on_success: Callback = None,
        on_error: Callback = None,
        context: str = "update",
    ) -> MutationOutcome:
        try:
            keys = keys_for(kind, scope, self.policy)
        except ValueError as exc:
            return self._rejected(kind, exc, context)

        txn = OptimisticTransaction(self.client, keys, self.pending)
        txn.begin()
        if apply is not None:
            try:
                apply(txn)
            except Exception:
                txn.rollback()
                raise

        try:
            result = await operation()
        except asyncio.CancelledError:
            txn.rollback()
            logger.info(
                f"mutation_cancelled: kind={kind.value} user={scope.user_id} "
                f"event={scope.event_id}"
            )
            raise
        except Exception as exc:
            txn.rollback()
            error_kind = classify_error(exc)
            logger.warning(
                f"mutation_failed: kind={kind.value} user={scope.user_id} "
                f"event={scope.event_id} category={scope.category_id} "
                f"expense={scope.expense_id} error_kind={error_kind.value} error={exc!r}",
                exc_info=exc,
            )
            self._call_back(kind, "on_error", on_error, exc)
            return MutationOutcome(
                kind=kind,
                ok=False,
                error=exc,
                error_kind=error_kind,
                message=user_message(exc, context),
            )

        if reconcile is not None and result is not None:
            reconcile(txn, result)
        invalidated = txn.commit()
        logger.info(
            f"mutation_committed: kind={kind.value} user={scope.user_id} "
            f"event={scope.event_id} keys={len(invalidated)}"
        )
        self._call_back(kind, "on_success", on_success, result)
        return MutationOutcome(kind=kind, ok=True, result=result, invalidated_keys=invalidated)

    @staticmethod
    def _call_back(kind: MutationKind, name: str, callback: Callback, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception(f"mutation_callback_failed: kind={kind.value} callback={name}")

    # -- aggregate patches -----------------------------------------------

    def _shift_event(
        self,
        txn: OptimisticTransaction,
        scope: MutationScope,
        *,
        budgeted: int = 0,
        scheduled: int = 0,
        spent: int = 0,
    ) -> None:
        deltas = {"budgeted": budgeted, "scheduled": scheduled, "spent": spent}
        txn.patch(
            QueryKeys.event(scope.user_id, scope.event_id),
            lambda record: _shift_event_record(record, **deltas),
        )
        txn.patch(
            QueryKeys.events(scope.user_id),
            lambda events: [
                _shift_event_record(e, **deltas) if e.get("id") == scope.event_id else e
                for e in events
            ],
        )

    def _shift_aggregates(
        self,
        txn: OptimisticTransaction,
        scope: MutationScope,
        category_id: Optional[str],
        *,
        scheduled: int = 0,
        spent: int = 0,
    ) -> bool:
        categories_key = QueryKeys.categories(scope.user_id, scope.event_id)
        if _find(txn.data(categories_key), category_id) is None:
            # The refetch after commit brings the real totals.
            logger.debug(
                f"aggregate_skipped: event={scope.event_id} category={category_id}"
            )
            return False
        txn.patch(
            categories_key,
            lambda categories: [
                _shift_category_record(c, scheduled=scheduled, spent=spent)
                if c.get("id") == category_id
                else c
                for c in categories
            ],
        )
        self._shift_event(txn, scope, scheduled=scheduled, spent=spent)
        return True

    def _cached_expense(self, scope: MutationScope, expense_id: str) -> Optional[Record]:
        return _find(
            self.client.get_query_data(QueryKeys.expenses(scope.user_id, scope.event_id)),
            expense_id,
        )

    # -- events ----------------------------------------------------------

    async def add_event(
        self, user_id: str, data: Record, *, on_success: Callback = None, on_error: Callback = None
    ) -> MutationOutcome:
        kind = MutationKind.add_event
        try:
            payload = EventIn.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        scope = MutationScope(user_id=user_id)
        placeholder = {
            **payload,
            "id": temp_id(),
            "total_budgeted_cents": 0,
            "total_scheduled_cents": 0,
            "total_spent_cents": 0,
            "spent_percentage": 0,
            "status": event_status(
                0, 0, event_date=_as_date(payload["event_date"]), today=date.today()
            ).value,
        }

        def apply(txn: OptimisticTransaction) -> None:
            txn.patch(QueryKeys.events(user_id), lambda events: events + [placeholder])

        def reconcile(txn: OptimisticTransaction, created: Record) -> None:
            txn.patch(
                QueryKeys.events(user_id),
                lambda events: _replace(events, placeholder["id"], created),
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.add_event(user_id, payload),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def update_event(
        self,
        user_id: str,
        event_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.update_event
        try:
            changes = EventUpdate.model_validate(data).model_dump(mode="json", exclude_none=True)
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        scope = MutationScope(user_id=user_id, event_id=event_id)

        def apply(txn: OptimisticTransaction) -> None:
            txn.patch(QueryKeys.event(user_id, event_id), lambda record: {**record, **changes})
            txn.patch(QueryKeys.events(user_id), lambda events: _merge(events, event_id, changes))

        def reconcile(txn: OptimisticTransaction, updated: Record) -> None:
            txn.patch(QueryKeys.event(user_id, event_id), lambda _record: updated)
            txn.patch(
                QueryKeys.events(user_id), lambda events: _replace(events, event_id, updated)
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.update_event(user_id, event_id, changes),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def delete_event(
        self, user_id: str, event_id: str, *, on_success: Callback = None, on_error: Callback = None
    ) -> MutationOutcome:
        kind = MutationKind.delete_event
        scope = MutationScope(user_id=user_id, event_id=event_id)

        def apply(txn: OptimisticTransaction) -> None:
            txn.patch(QueryKeys.events(user_id), lambda events: _without(events, event_id))

        outcome = await self._run(
            kind,
            scope,
            lambda: self.backend.delete_event(user_id, event_id),
            apply=apply,
            on_success=on_success,
            on_error=on_error,
            context="delete",
        )
        if outcome.ok:
            # Nothing is left to refetch for the deleted event.
            for key in outcome.invalidated_keys:
                if event_id in key:
                    self.client.remove_queries(key)
        return outcome

    # -- categories ------------------------------------------------------

    async def add_category(
        self,
        user_id: str,
        event_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.add_category
        try:
            payload = CategoryIn.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        scope = MutationScope(user_id=user_id, event_id=event_id)
        placeholder = {
            **payload,
            "id": temp_id(),
            "event_id": event_id,
            "scheduled_cents": 0,
            "spent_cents": 0,
        }

        def apply(txn: OptimisticTransaction) -> None:
            txn.patch(
                QueryKeys.categories(user_id, event_id),
                lambda categories: categories + [placeholder],
            )
            self._shift_event(txn, scope, budgeted=payload["budgeted_cents"])

        def reconcile(txn: OptimisticTransaction, created: Record) -> None:
            txn.patch(
                QueryKeys.categories(user_id, event_id),
                lambda categories: _replace(categories, placeholder["id"], created),
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.add_category(user_id, event_id, payload),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def update_category(
        self,
        user_id: str,
        event_id: str,
        category_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.update_category
        try:
            changes = CategoryUpdate.model_validate(data).model_dump(
                mode="json", exclude_none=True
            )
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        scope = MutationScope(user_id=user_id, event_id=event_id, category_id=category_id)
        categories_key = QueryKeys.categories(user_id, event_id)

        def apply(txn: OptimisticTransaction) -> None:
            current = _find(txn.data(categories_key), category_id)
            if current is None:
                return
            txn.patch(categories_key, lambda cats: _merge(cats, category_id, changes))
            if "budgeted_cents" in changes:
                delta = changes["budgeted_cents"] - (current.get("budgeted_cents") or 0)
                self._shift_event(txn, scope, budgeted=delta)
            snapshot = {
                f"category_{name}": changes[name]
                for name in ("name", "color", "icon")
                if name in changes
            }
            if snapshot:
                txn.patch(
                    QueryKeys.expenses(user_id, event_id),
                    lambda expenses: [
                        {**e, **snapshot} if e.get("category_id") == category_id else e
                        for e in expenses
                    ],
                )

        def reconcile(txn: OptimisticTransaction, updated: Record) -> None:
            txn.patch(categories_key, lambda cats: _replace(cats, category_id, updated))

        return await self._run(
            kind,
            scope,
            lambda: self.backend.update_category(user_id, event_id, category_id, changes),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def delete_category(
        self,
        user_id: str,
        event_id: str,
        category_id: str,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.delete_category
        scope = MutationScope(user_id=user_id, event_id=event_id, category_id=category_id)
        categories_key = QueryKeys.categories(user_id, event_id)
        category = _find(self.client.get_query_data(categories_key), category_id)
        cached_expenses = self.client.get_query_data(QueryKeys.expenses(user_id, event_id))
        if cached_expenses is not None:
            expenses = [e for e in cached_expenses if e.get("category_id") == category_id]
            if not can_delete_category(expenses):
                check = check_category_deletion(category or {}, expenses)
                return self._rejected(kind, PreconditionFailed(check.message), "delete")

        def apply(txn: OptimisticTransaction) -> None:
            if category is None:
                return
            txn.patch(categories_key, lambda cats: _without(cats, category_id))
            self._shift_event(txn, scope, budgeted=-(category.get("budgeted_cents") or 0))

        return await self._run(
            kind,
            scope,
            lambda: self.backend.delete_category(user_id, event_id, category_id),
            apply=apply,
            on_success=on_success,
            on_error=on_error,
            context="delete",
        )

    # -- expenses --------------------------------------------------------

    async def add_expense(
        self,
        user_id: str,
        event_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.add_expense
        try:
            payload = ExpenseIn.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        category_id = payload["category_id"]
        scope = MutationScope(user_id=user_id, event_id=event_id, category_id=category_id)
        category = _find(
            self.client.get_query_data(QueryKeys.categories(user_id, event_id)), category_id
        ) or {}
        placeholder = {
            **payload,
            "id": temp_id(),
            "event_id": event_id,
            "category_name": category.get("name", ""),
            "category_color": category.get("color", ""),
            "category_icon": category.get("icon", ""),
            "has_payment_schedule": False,
            "payment_schedule": [],
            "one_off_payment": None,
        }

        def apply(txn: OptimisticTransaction) -> None:
            txn.patch(
                QueryKeys.expenses(user_id, event_id),
                lambda expenses: [placeholder] + expenses,
            )
            self._shift_aggregates(
                txn, scope, category_id, scheduled=payload["amount_cents"]
            )

        def reconcile(txn: OptimisticTransaction, created: Record) -> None:
            txn.patch(
                QueryKeys.expenses(user_id, event_id),
                lambda expenses: _replace(expenses, placeholder["id"], created),
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.add_expense(user_id, event_id, payload),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def update_expense(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.update_expense
        try:
            changes = ExpenseUpdate.model_validate(data).model_dump(
                mode="json", exclude_none=True
            )
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        expenses_key = QueryKeys.expenses(user_id, event_id)

        def apply(txn: OptimisticTransaction) -> None:
            current = _find(txn.data(expenses_key), expense_id)
            if current is None:
                return
            merged = {**current, **changes}
            old_category = current.get("category_id")
            new_category = merged.get("category_id")
            old_amount = current.get("amount_cents") or 0
            new_amount = merged.get("amount_cents") or 0
            if new_category != old_category:
                target = _find(
                    txn.data(QueryKeys.categories(user_id, event_id)), new_category
                )
                if target is not None:
                    merged["category_name"] = target.get("name", "")
                    merged["category_color"] = target.get("color", "")
                    merged["category_icon"] = target.get("icon", "")
            txn.patch(expenses_key, lambda expenses: _replace(expenses, expense_id, merged))

            if new_category != old_category:
                paid = expense_paid_cents(current)
                self._shift_aggregates(
                    txn, scope, old_category, scheduled=-old_amount, spent=-paid
                )
                self._shift_aggregates(
                    txn, scope, new_category, scheduled=new_amount, spent=paid
                )
            elif new_amount != old_amount:
                self._shift_aggregates(
                    txn, scope, old_category, scheduled=new_amount - old_amount
                )

        def reconcile(txn: OptimisticTransaction, updated: Record) -> None:
            txn.patch(expenses_key, lambda expenses: _replace(expenses, expense_id, updated))

        return await self._run(
            kind,
            scope,
            lambda: self.backend.update_expense(user_id, event_id, expense_id, changes),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def delete_expense(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.delete_expense
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        expenses_key = QueryKeys.expenses(user_id, event_id)

        def apply(txn: OptimisticTransaction) -> None:
            current = _find(txn.data(expenses_key), expense_id)
            if current is None:
                return
            txn.patch(expenses_key, lambda expenses: _without(expenses, expense_id))
            self._shift_aggregates(
                txn,
                scope,
                current.get("category_id"),
                scheduled=-(current.get("amount_cents") or 0),
                spent=-expense_paid_cents(current),
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.delete_expense(user_id, event_id, expense_id),
            apply=apply,
            on_success=on_success,
            on_error=on_error,
            context="delete",
        )

    # -- payments --------------------------------------------------------

    def _replace_expense(self, scope: MutationScope) -> Callable[[OptimisticTransaction, Record], None]:
        expenses_key = QueryKeys.expenses(scope.user_id, scope.event_id)

        def reconcile(txn: OptimisticTransaction, updated: Record) -> None:
            txn.patch(
                expenses_key, lambda expenses: _replace(expenses, scope.expense_id, updated)
            )

        return reconcile

    def _reset_payments(
        self,
        txn: OptimisticTransaction,
        scope: MutationScope,
        replacement: Callable[[Record], Record],
    ) -> None:
        expenses_key = QueryKeys.expenses(scope.user_id, scope.event_id)
        current = _find(txn.data(expenses_key), scope.expense_id)
        if current is None:
            return
        txn.patch(
            expenses_key,
            lambda expenses: _replace(expenses, scope.expense_id, replacement(current)),
        )
        paid = expense_paid_cents(current)
        if paid:
            self._shift_aggregates(txn, scope, current.get("category_id"), spent=-paid)

    async def create_payment_schedule(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        payments: list[Record],
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.create_payment_schedule
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        try:
            schedule = PaymentScheduleIn.model_validate({"payments": payments}).model_dump(
                mode="json"
            )["payments"]
            expense = self._cached_expense(scope, expense_id)
            if expense is not None:
                validate_payment_schedule(
                    expense.get("amount_cents") or 0, [p["amount_cents"] for p in schedule]
                )
        except ValueError as exc:
            return self._rejected(kind, exc, "update")

        def apply(txn: OptimisticTransaction) -> None:
            self._reset_payments(
                txn,
                scope,
                lambda current: {
                    **current,
                    "has_payment_schedule": True,
                    "one_off_payment": None,
                    "payment_schedule": [
                        _temp_payment(expense_id, "scheduled", p) for p in schedule
                    ],
                },
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.create_payment_schedule(user_id, event_id, expense_id, schedule),
            apply=apply,
            reconcile=self._replace_expense(scope),
            on_success=on_success,
            on_error=on_error,
        )

    async def create_single_payment(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        payment: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.create_single_payment
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        try:
            single = PaymentIn.model_validate(payment).model_dump(mode="json")
            expense = self._cached_expense(scope, expense_id)
            if expense is not None:
                validate_payment_schedule(
                    expense.get("amount_cents") or 0, [single["amount_cents"]]
                )
        except ValueError as exc:
            return self._rejected(kind, exc, "update")

        def apply(txn: OptimisticTransaction) -> None:
            self._reset_payments(
                txn,
                scope,
                lambda current: {
                    **current,
                    "has_payment_schedule": False,
                    "payment_schedule": [],
                    "one_off_payment": _temp_payment(expense_id, "one_off", single),
                },
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.create_single_payment(user_id, event_id, expense_id, single),
            apply=apply,
            reconcile=self._replace_expense(scope),
            on_success=on_success,
            on_error=on_error,
        )

    async def mark_payment_paid(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        payment_id: str,
        data: Record,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.mark_payment_paid
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        try:
            paid = MarkPaidIn.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            return self._rejected(kind, exc, "update")
        expense = self._cached_expense(scope, expense_id)
        payment = _find(_payments_in(expense), payment_id) if expense else None
        if payment is not None and payment.get("is_paid"):
            return self._rejected(kind, ValueError("Payment is already marked as paid"), "update")

        changes = {
            "is_paid": True,
            "paid_date": paid["paid_date"],
            "payment_method": paid["payment_method"],
        }
        if paid.get("notes") is not None:
            changes["notes"] = paid["notes"]
        expenses_key = QueryKeys.expenses(user_id, event_id)

        def apply(txn: OptimisticTransaction) -> None:
            if expense is None or payment is None:
                return
            txn.patch(
                expenses_key,
                lambda expenses: _replace(
                    expenses, expense_id, _with_payment(expense, payment_id, changes)
                ),
            )
            self._shift_aggregates(
                txn, scope, expense.get("category_id"), spent=payment.get("amount_cents") or 0
            )

        def reconcile(txn: OptimisticTransaction, updated: Record) -> None:
            txn.patch(
                expenses_key,
                lambda expenses: [
                    _with_payment(e, payment_id, updated) if e.get("id") == expense_id else e
                    for e in expenses
                ],
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.mark_payment_paid(
                user_id, event_id, expense_id, payment_id, paid
            ),
            apply=apply,
            reconcile=reconcile,
            on_success=on_success,
            on_error=on_error,
        )

    async def delete_payment(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        payment_id: str,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.delete_payment
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)
        expenses_key = QueryKeys.expenses(user_id, event_id)

        def apply(txn: OptimisticTransaction) -> None:
            expense = _find(txn.data(expenses_key), expense_id)
            payment = _find(_payments_in(expense), payment_id) if expense else None
            if payment is None:
                return
            txn.patch(
                expenses_key,
                lambda expenses: _replace(
                    expenses, expense_id, _without_payment(expense, payment_id)
                ),
            )
            if payment.get("is_paid"):
                self._shift_aggregates(
                    txn,
                    scope,
                    expense.get("category_id"),
                    spent=-(payment.get("amount_cents") or 0),
                )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.delete_payment(user_id, event_id, expense_id, payment_id),
            apply=apply,
            reconcile=self._replace_expense(scope),
            on_success=on_success,
            on_error=on_error,
            context="delete",
        )

    async def clear_payments(
        self,
        user_id: str,
        event_id: str,
        expense_id: str,
        *,
        on_success: Callback = None,
        on_error: Callback = None,
    ) -> MutationOutcome:
        kind = MutationKind.clear_payments
        scope = MutationScope(user_id=user_id, event_id=event_id, expense_id=expense_id)

        def apply(txn: OptimisticTransaction) -> None:
            self._reset_payments(
                txn,
                scope,
                lambda current: {
                    **current,
                    "has_payment_schedule": False,
                    "payment_schedule": [],
                    "one_off_payment": None,
                },
            )

        return await self._run(
            kind,
            scope,
            lambda: self.backend.clear_payments(user_id, event_id, expense_id),
            apply=apply,
            reconcile=self._replace_expense(scope),
            on_success=on_success,
            on_error=on_error,
            context="delete",
        )

    # -- maintenance -----------------------------------------------------

    async def recalculate_event(
        self, user_id: str, event_id: str, *, on_success: Callback = None, on_error: Callback = None
    ) -> MutationOutcome:
        kind = MutationKind.recalculate_event
        if not user_id or not event_id:
            return self._rejected(kind, ValueError("User ID and event ID are required"), "update")
        return await self._run(
            kind,
            MutationScope(user_id=user_id, event_id=event_id),
            lambda: self.backend.recalculate_event(user_id, event_id),
            on_success=on_success,
            on_error=on_error,
        )
