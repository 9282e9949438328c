import asyncio
import copy

import pytest

from cache import QueryClient
from errors import BackendUnavailable, ErrorKind, InvalidTransition, NotFoundError
from invalidation import MutationKind, MutationScope, QueryKeys, keys_for
from mutations import MutationCoordinator, OptimisticTransaction, is_temp_id

USER = "u1"
EVENT = "ev1"

EVENT_RECORD = {
    "id": EVENT,
    "name": "Wedding",
    "type": "wedding",
    "description": "",
    "event_date": "2099-06-01",
    "currency": "USD",
    "total_budgeted_cents": 1500,
    "total_scheduled_cents": 200,
    "total_spent_cents": 0,
    "spent_percentage": 0,
    "status": "under-budget",
}
VENUE = {
    "id": "c1",
    "event_id": EVENT,
    "name": "Venue",
    "description": "",
    "icon": "🎉",
    "color": "#059669",
    "budgeted_cents": 1000,
    "scheduled_cents": 200,
    "spent_cents": 0,
}
FLOWERS = {**VENUE, "id": "c2", "name": "Flowers", "budgeted_cents": 500, "scheduled_cents": 0}
DEPOSIT = {
    "id": "e1",
    "event_id": EVENT,
    "category_id": "c1",
    "category_name": "Venue",
    "category_color": "#059669",
    "category_icon": "🎉",
    "name": "Deposit",
    "description": "",
    "amount_cents": 200,
    "currency": "USD",
    "vendor": {"name": "", "address": "", "website": "", "email": ""},
    "date": "2026-03-01",
    "notes": "",
    "tags": [],
    "attachments": [],
    "has_payment_schedule": False,
    "payment_schedule": [],
    "one_off_payment": None,
}


class FakeBackend:
    """Answers every backend call from ``results``; ``gate`` holds responses back."""

    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.gate = None
        self.results = {}
        self.calls = []

    def __getattr__(self, name):
        async def call(*args):
            self.calls.append(name)
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_with is not None:
                raise self.fail_with
            return copy.deepcopy(self.results.get(name))

        return call


def seeded_client(*, expenses=None, categories=None) -> QueryClient:
    client = QueryClient(stale_time=60)
    client.set_query_data(QueryKeys.events(USER), [EVENT_RECORD])
    client.set_query_data(QueryKeys.event(USER, EVENT), EVENT_RECORD)
    client.set_query_data(
        QueryKeys.categories(USER, EVENT),
        categories if categories is not None else [VENUE, FLOWERS],
    )
    client.set_query_data(
        QueryKeys.expenses(USER, EVENT), expenses if expenses is not None else [DEPOSIT]
    )
    client.set_query_data(QueryKeys.payments(USER, EVENT), [])
    client.set_query_data(QueryKeys.upcoming_payments(USER), [])
    return client


def cache_state(client: QueryClient) -> dict:
    return {key: client.snapshot(key) for key in client.keys()}


def category(client: QueryClient, category_id: str) -> dict:
    categories = client.get_query_data(QueryKeys.categories(USER, EVENT))
    return next(c for c in categories if c["id"] == category_id)


MUTATIONS = {
    "add_event": lambda m: m.add_event(
        USER, {"name": "Party", "type": "birthday", "event_date": "2099-01-01"}
    ),
    "update_event": lambda m: m.update_event(USER, EVENT, {"name": "Reception"}),
    "delete_event": lambda m: m.delete_event(USER, EVENT),
    "add_category": lambda m: m.add_category(USER, EVENT, {"name": "Music", "budgeted_cents": 300}),
    "update_category": lambda m: m.update_category(
        USER, EVENT, "c1", {"name": "Hall", "budgeted_cents": 700}
    ),
    "delete_category": lambda m: m.delete_category(USER, EVENT, "c2"),
    "add_expense": lambda m: m.add_expense(
        USER,
        EVENT,
        {"category_id": "c1", "name": "Chairs", "amount_cents": 150, "date": "2026-03-02"},
    ),
    "update_expense": lambda m: m.update_expense(
        USER, EVENT, "e1", {"category_id": "c2", "amount_cents": 250}
    ),
    "delete_expense": lambda m: m.delete_expense(USER, EVENT, "e1"),
}


@pytest.mark.asyncio
@pytest.mark.parametrize("name", sorted(MUTATIONS))
async def test_failed_mutation_restores_the_cache(name) -> None:
    client = seeded_client()
    before = cache_state(client)
    backend = FakeBackend(fail_with=BackendUnavailable("offline"))

    outcome = await MUTATIONS[name](MutationCoordinator(client, backend))

    assert outcome.ok is False
    assert outcome.error_kind is ErrorKind.network
    assert cache_state(client) == before
    # Mutations are not retried.
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_error_callback_and_message() -> None:
    client = seeded_client()
    backend = FakeBackend(fail_with=BackendUnavailable("offline"))
    errors = []

    outcome = await MutationCoordinator(client, backend).delete_expense(
        USER, EVENT, "e1", on_error=errors.append
    )

    assert errors == [outcome.error]
    assert outcome.message == "Unable to delete. Please check your connection and try again."


@pytest.mark.asyncio
async def test_cancelled_mutation_restores_the_cache() -> None:
    client = seeded_client()
    before = cache_state(client)
    backend = FakeBackend()
    backend.gate = asyncio.Event()
    coordinator = MutationCoordinator(client, backend)

    pending = asyncio.create_task(
        coordinator.add_expense(
            USER,
            EVENT,
            {"category_id": "c1", "name": "Cake", "amount_cents": 150, "date": "2026-03-02"},
        )
    )
    await asyncio.sleep(0)
    assert category(client, "c1")["scheduled_cents"] == 350

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    assert cache_state(client) == before
    assert coordinator.pending.in_flight(QueryKeys.expenses(USER, EVENT)) == 0


@pytest.mark.asyncio
async def test_raising_callbacks_still_return_an_outcome() -> None:
    def broken(_value):
        raise RuntimeError("toast failed")

    client = seeded_client()
    failing = FakeBackend(fail_with=BackendUnavailable("offline"))
    failed = await MutationCoordinator(client, failing).update_category(
        USER, EVENT, "c1", {"name": "Hall"}, on_error=broken
    )

    assert failed.ok is False
    assert failed.error_kind is ErrorKind.network
    assert category(client, "c1")["name"] == "Venue"

    backend = FakeBackend()
    backend.results["update_category"] = {**VENUE, "name": "Hall"}
    saved = await MutationCoordinator(client, backend).update_category(
        USER, EVENT, "c1", {"name": "Hall"}, on_success=broken
    )

    assert saved.ok is True
    assert category(client, "c1")["name"] == "Hall"


@pytest.mark.asyncio
async def test_overlapping_failed_renames_restore_the_original_name() -> None:
    client = seeded_client()
    backend = FakeBackend(fail_with=BackendUnavailable("offline"))
    backend.gate = asyncio.Event()
    coordinator = MutationCoordinator(client, backend)
    categories_key = QueryKeys.categories(USER, EVENT)

    first = asyncio.create_task(coordinator.update_category(USER, EVENT, "c1", {"name": "A"}))
    await asyncio.sleep(0)
    second = asyncio.create_task(coordinator.update_category(USER, EVENT, "c1", {"name": "B"}))
    await asyncio.sleep(0)
    assert category(client, "c1")["name"] == "B"
    assert coordinator.pending.in_flight(categories_key) == 2

    backend.gate.set()
    outcomes = await asyncio.gather(first, second)

    assert [outcome.ok for outcome in outcomes] == [False, False]
    assert category(client, "c1")["name"] == "Venue"
    expense = client.get_query_data(QueryKeys.expenses(USER, EVENT))[0]
    assert expense["category_name"] == "Venue"
    assert client.snapshot(categories_key).is_invalidated is True
    assert coordinator.pending.in_flight(categories_key) == 0


@pytest.mark.asyncio
async def test_overlapping_failure_refetches_the_server_value() -> None:
    client = seeded_client()
    backend = FakeBackend(fail_with=BackendUnavailable("offline"))
    backend.gate = asyncio.Event()
    coordinator = MutationCoordinator(client, backend)
    categories_key = QueryKeys.categories(USER, EVENT)
    server_categories = [{**VENUE, "name": "Ballroom"}, FLOWERS]

    async def fetch_categories():
        return server_categories

    client.register_fetcher(categories_key, fetch_categories)

    first = asyncio.create_task(coordinator.update_category(USER, EVENT, "c1", {"name": "A"}))
    await asyncio.sleep(0)
    second = asyncio.create_task(coordinator.update_category(USER, EVENT, "c1", {"name": "B"}))
    await asyncio.sleep(0)
    backend.gate.set()
    await asyncio.gather(first, second)
    await client.settle()

    assert category(client, "c1")["name"] == "Ballroom"


@pytest.mark.asyncio
async def test_new_expense_shows_immediately_then_takes_server_id() -> None:
    client = seeded_client()
    backend = FakeBackend()
    backend.gate = asyncio.Event()
    created = {**DEPOSIT, "id": "e99", "name": "Chairs", "amount_cents": 150}
    backend.results["add_expense"] = created
    received = []

    pending = asyncio.create_task(
        MutationCoordinator(client, backend).add_expense(
            USER,
            EVENT,
            {"category_id": "c1", "name": "Chairs", "amount_cents": 150, "date": "2026-03-02"},
            on_success=received.append,
        )
    )
    await asyncio.sleep(0)

    assert category(client, "c1")["scheduled_cents"] == 350
    assert client.get_query_data(QueryKeys.event(USER, EVENT))["total_scheduled_cents"] == 350
    listed = client.get_query_data(QueryKeys.expenses(USER, EVENT))
    assert is_temp_id(listed[0]["id"])
    assert listed[0]["category_name"] == "Venue"

    backend.gate.set()
    outcome = await pending
    await client.settle()

    assert outcome.ok is True
    assert received == [created]
    assert [e["id"] for e in client.get_query_data(QueryKeys.expenses(USER, EVENT))] == [
        "e99",
        "e1",
    ]


@pytest.mark.asyncio
async def test_success_refetches_exactly_the_policy_keys() -> None:
    client = seeded_client()
    backend = FakeBackend()
    backend.results["add_category"] = {**VENUE, "id": "c3", "name": "Music"}
    fetchers = {
        QueryKeys.events(USER): "fetch_events",
        QueryKeys.event(USER, EVENT): "fetch_event",
        QueryKeys.categories(USER, EVENT): "fetch_categories",
        QueryKeys.expenses(USER, EVENT): "fetch_expenses",
        QueryKeys.payments(USER, EVENT): "fetch_payments",
        QueryKeys.upcoming_payments(USER): "fetch_upcoming_payments",
    }
    for key, name in fetchers.items():
        backend.results[name] = client.get_query_data(key)
        client.register_fetcher(key, getattr(backend, name))

    outcome = await MutationCoordinator(client, backend).add_category(
        USER, EVENT, {"name": "Music", "budgeted_cents": 300}
    )
    await client.settle()

    expected = keys_for(MutationKind.add_category, MutationScope(user_id=USER, event_id=EVENT))
    assert outcome.invalidated_keys == expected
    assert sorted(backend.calls[1:]) == ["fetch_categories", "fetch_event", "fetch_events"]


@pytest.mark.asyncio
async def test_expense_in_uncached_category_skips_aggregates() -> None:
    client = seeded_client()
    backend = FakeBackend()
    backend.results["add_expense"] = {**DEPOSIT, "id": "e5", "category_id": "c9"}

    outcome = await MutationCoordinator(client, backend).add_expense(
        USER,
        EVENT,
        {"category_id": "c9", "name": "Cake", "amount_cents": 80, "date": "2026-03-02"},
    )

    assert outcome.ok is True
    assert category(client, "c1")["scheduled_cents"] == 200
    assert client.get_query_data(QueryKeys.event(USER, EVENT))["total_scheduled_cents"] == 200
    assert client.get_query_data(QueryKeys.expenses(USER, EVENT))[0]["id"] == "e5"


@pytest.mark.asyncio
async def test_optimistic_totals_never_go_negative() -> None:
    paid = {
        **DEPOSIT,
        "amount_cents": 300,
        "one_off_payment": {"id": "p1", "amount_cents": 300, "is_paid": True},
    }
    client = seeded_client(expenses=[paid], categories=[{**VENUE, "spent_cents": 100}])

    outcome = await MutationCoordinator(client, FakeBackend()).delete_expense(USER, EVENT, "e1")

    assert outcome.ok is True
    assert category(client, "c1")["spent_cents"] == 0
    assert category(client, "c1")["scheduled_cents"] == 0
    assert client.get_query_data(QueryKeys.event(USER, EVENT))["total_spent_cents"] == 0


@pytest.mark.asyncio
async def test_moving_an_expense_shifts_both_categories() -> None:
    client = seeded_client()
    backend = FakeBackend()
    backend.gate = asyncio.Event()

    pending = asyncio.create_task(
        MutationCoordinator(client, backend).update_expense(
            USER, EVENT, "e1", {"category_id": "c2"}
        )
    )
    await asyncio.sleep(0)

    assert category(client, "c1")["scheduled_cents"] == 0
    assert category(client, "c2")["scheduled_cents"] == 200
    moved = client.get_query_data(QueryKeys.expenses(USER, EVENT))[0]
    assert moved["category_name"] == "Flowers"

    backend.gate.set()
    await pending


@pytest.mark.asyncio
async def test_mark_paid_raises_spent_and_status() -> None:
    unpaid = {
        **DEPOSIT,
        "amount_cents": 1400,
        "one_off_payment": {"id": "p1", "amount_cents": 1400, "is_paid": False},
    }
    client = seeded_client(expenses=[unpaid])
    backend = FakeBackend()
    backend.results["mark_payment_paid"] = {"id": "p1", "amount_cents": 1400, "is_paid": True}

    outcome = await MutationCoordinator(client, backend).mark_payment_paid(
        USER, EVENT, "e1", "p1", {"paid_date": "2026-04-01", "payment_method": "cash"}
    )

    assert outcome.ok is True
    event = client.get_query_data(QueryKeys.event(USER, EVENT))
    assert event["total_spent_cents"] == 1400
    assert event["spent_percentage"] == 93
    assert event["status"] == "on-track"
    expense = client.get_query_data(QueryKeys.expenses(USER, EVENT))[0]
    assert expense["one_off_payment"]["is_paid"] is True


@pytest.mark.asyncio
async def test_paid_payment_cannot_be_marked_again() -> None:
    paid = {
        **DEPOSIT,
        "one_off_payment": {"id": "p1", "amount_cents": 200, "is_paid": True},
    }
    client = seeded_client(expenses=[paid])
    backend = FakeBackend()

    outcome = await MutationCoordinator(client, backend).mark_payment_paid(
        USER, EVENT, "e1", "p1", {"paid_date": "2026-04-01", "payment_method": "cash"}
    )

    assert outcome.ok is False
    assert outcome.error_kind is ErrorKind.validation
    assert backend.calls == []


@pytest.mark.asyncio
async def test_category_with_cached_expenses_is_not_deleted() -> None:
    client = seeded_client()
    before = cache_state(client)
    backend = FakeBackend()

    outcome = await MutationCoordinator(client, backend).delete_category(USER, EVENT, "c1")

    assert outcome.ok is False
    assert outcome.error_kind is ErrorKind.precondition
    assert "1 expense" in outcome.message
    assert backend.calls == []
    assert cache_state(client) == before


@pytest.mark.asyncio
async def test_invalid_input_touches_nothing() -> None:
    client = seeded_client()
    before = cache_state(client)
    backend = FakeBackend()
    coordinator = MutationCoordinator(client, backend)

    bad_amount = await coordinator.add_expense(
        USER, EVENT, {"category_id": "c1", "name": "Chairs", "amount_cents": 0, "date": "2026-03-02"}
    )
    bad_schedule = await coordinator.create_payment_schedule(
        USER,
        EVENT,
        "e1",
        [{"name": "Half", "amount_cents": 100, "due_date": "2026-04-01"}],
    )
    no_user = await coordinator.update_event("", EVENT, {"name": "Reception"})

    for outcome in (bad_amount, bad_schedule, no_user):
        assert outcome.ok is False
        assert outcome.error_kind is ErrorKind.validation
    assert backend.calls == []
    assert cache_state(client) == before


@pytest.mark.asyncio
async def test_deleted_event_queries_are_dropped() -> None:
    client = seeded_client()

    outcome = await MutationCoordinator(client, FakeBackend()).delete_event(USER, EVENT)

    assert outcome.ok is True
    assert client.get_query_data(QueryKeys.events(USER)) == []
    assert client.has_data(QueryKeys.expenses(USER, EVENT)) is False
    assert client.has_data(QueryKeys.event(USER, EVENT)) is False
    assert client.has_data(QueryKeys.upcoming_payments(USER)) is True


@pytest.mark.asyncio
async def test_not_found_maps_to_its_message() -> None:
    client = seeded_client()
    backend = FakeBackend(fail_with=NotFoundError("Expense not found"))

    outcome = await MutationCoordinator(client, backend).update_expense(
        USER, EVENT, "e1", {"name": "Balance"}
    )

    assert outcome.error_kind is ErrorKind.not_found
    assert outcome.message == "This item no longer exists."


def test_transaction_state_machine() -> None:
    client = QueryClient(stale_time=60)
    key = QueryKeys.events(USER)
    client.set_query_data(key, [])

    txn = OptimisticTransaction(client, [key])
    with pytest.raises(InvalidTransition):
        txn.patch(key, lambda data: data)
    with pytest.raises(InvalidTransition):
        txn.commit()

    txn.begin()
    with pytest.raises(InvalidTransition):
        txn.begin()
    with pytest.raises(InvalidTransition):
        txn.patch(QueryKeys.event(USER, EVENT), lambda data: data)

    txn.patch(key, lambda data: data + [{"id": "temp-x"}])
    txn.rollback()

    assert client.get_query_data(key) == []
    with pytest.raises(InvalidTransition):
        txn.commit()
    with pytest.raises(InvalidTransition):
        txn.rollback()
