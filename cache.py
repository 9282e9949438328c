"""Keyed query cache used by the client data layer.

Keys are tuples such as ``("expenses", user_id, event_id)``; invalidation,
cancellation and removal match on key prefixes. Values are deep-copied on
the way in and out, so the only way to change cached state is through this
class.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from config import get_settings

logger = logging.getLogger(__name__)

QueryKey = tuple[str, ...]
Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[QueryKey], None]


def key_matches(key: QueryKey, prefix: Iterable[str]) -> bool:
    prefix = tuple(prefix)
    return key[: len(prefix)] == prefix


class QueryState:
    __slots__ = ("data", "has_data", "updated_at", "is_invalidated", "error", "fetch_task")

    def __init__(self) -> None:
        self.data: Any = None
        self.has_data = False
        self.updated_at: Optional[float] = None
        self.is_invalidated = False
        self.error: Optional[BaseException] = None
        self.fetch_task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class QuerySnapshot:
    present: bool
    data: Any = None
    has_data: bool = False
    updated_at: Optional[float] = None
    is_invalidated: bool = False
    error: Optional[BaseException] = None


class QueryClient:
    def __init__(
        self,
        stale_time: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if stale_time is None:
            stale_time = get_settings().cache_stale_secs
        self.stale_time = stale_time
        self._clock = clock
        self._queries: dict[QueryKey, QueryState] = {}
        self._fetchers: dict[QueryKey, Fetcher] = {}
        self._listeners: list[Listener] = []

    # -- reads -----------------------------------------------------------

    def keys(self, prefix: Iterable[str] = ()) -> list[QueryKey]:
        return [key for key in self._queries if key_matches(key, prefix)]

    def has_data(self, key: QueryKey) -> bool:
        state = self._queries.get(key)
        return bool(state and state.has_data)

    def get_query_data(self, key: QueryKey) -> Any:
        state = self._queries.get(key)
        if state is None or not state.has_data:
            return None
        return copy.deepcopy(state.data)

    def get_error(self, key: QueryKey) -> Optional[BaseException]:
        state = self._queries.get(key)
        return state.error if state else None

    def is_fetching(self, key: QueryKey) -> bool:
        state = self._queries.get(key)
        return bool(state and state.fetch_task and not state.fetch_task.done())

    def is_stale(self, key: QueryKey, stale_time: Optional[float] = None) -> bool:
        state = self._queries.get(key)
        if state is None or not state.has_data or state.is_invalidated:
            return True
        window = self.stale_time if stale_time is None else stale_time
        return self._clock() - (state.updated_at or 0.0) > window

    # -- writes ----------------------------------------------------------

    def set_query_data(self, key: QueryKey, data: Any) -> None:
        state = self._queries.setdefault(key, QueryState())
        state.data = copy.deepcopy(data)
        state.has_data = True
        state.updated_at = self._clock()
        state.is_invalidated = False
        state.error = None
        self._notify(key)

    def update_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> bool:
        """Apply ``updater`` to a copy of the cached value.

        Returns False without calling the updater when the key holds no data.
        """
        if not self.has_data(key):
            return False
        self.set_query_data(key, updater(self.get_query_data(key)))
        return True

    def register_fetcher(self, key: QueryKey, fetcher: Fetcher) -> None:
        self._fetchers[key] = fetcher

    async def fetch_query(
        self,
        key: QueryKey,
        fetcher: Optional[Fetcher] = None,
        *,
        stale_time: Optional[float] = None,
        force: bool = False,
    ) -> Any:
        if fetcher is not None:
            self.register_fetcher(key, fetcher)
        if key not in self._fetchers:
            raise KeyError(f"No fetcher registered for {key!r}")
        if not force and not self.is_stale(key, stale_time):
            return self.get_query_data(key)

        task = self._start_fetch(key)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # cancel_queries() stopped the fetch, not our caller.
            if task.cancelled():
                return self.get_query_data(key)
            raise
        return self.get_query_data(key)

    def invalidate_queries(
        self, prefix: Iterable[str] = (), *, refetch: bool = True
    ) -> list[QueryKey]:
        matched = self.keys(prefix)
        for key in matched:
            self._queries[key].is_invalidated = True
            self._notify(key)
        if refetch and _running_loop() is not None:
            for key in matched:
                if key in self._fetchers:
                    self._cancel(key)
                    self._start_fetch(key)
        return matched

    def cancel_queries(self, prefix: Iterable[str] = ()) -> list[QueryKey]:
        return [key for key in self.keys(prefix) if self._cancel(key)]

    def remove_queries(self, prefix: Iterable[str] = ()) -> list[QueryKey]:
        removed = self.keys(prefix)
        for key in removed:
            self._cancel(key)
            del self._queries[key]
            self._notify(key)
        return removed

    def clear(self) -> None:
        for key in list(self._queries):
            self._cancel(key)
        self._queries.clear()
        self._fetchers.clear()

    # -- snapshots -------------------------------------------------------

    def snapshot(self, key: QueryKey) -> QuerySnapshot:
        state = self._queries.get(key)
        if state is None:
            return QuerySnapshot(present=False)
        return QuerySnapshot(
            present=True,
            data=copy.deepcopy(state.data),
            has_data=state.has_data,
            updated_at=state.updated_at,
            is_invalidated=state.is_invalidated,
            error=state.error,
        )

    def restore(self, key: QueryKey, snapshot: QuerySnapshot) -> None:
        self._cancel(key)
        if not snapshot.present:
            if self._queries.pop(key, None) is not None:
                self._notify(key)
            return
        state = self._queries.setdefault(key, QueryState())
        state.data = copy.deepcopy(snapshot.data)
        state.has_data = snapshot.has_data
        state.updated_at = snapshot.updated_at
        state.is_invalidated = snapshot.is_invalidated
        state.error = snapshot.error
        self._notify(key)

    async def settle(self) -> None:
        while True:
            pending = [
                state.fetch_task
                for state in self._queries.values()
                if state.fetch_task is not None and not state.fetch_task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -- listeners -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: QueryKey) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                logger.exception(f"cache_listener_failed: key={key!r}")

    # -- fetch plumbing --------------------------------------------------

    def _start_fetch(self, key: QueryKey) -> asyncio.Task:
        state = self._queries.setdefault(key, QueryState())
        if state.fetch_task is not None and not state.fetch_task.done():
            return state.fetch_task
        task = asyncio.get_running_loop().create_task(
            self._run_fetch(key, self._fetchers[key])
        )
        state.fetch_task = task
        task.add_done_callback(lambda done: self._on_fetch_done(key, done))
        return task

    async def _run_fetch(self, key: QueryKey, fetcher: Fetcher) -> None:
        try:
            data = await fetcher()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            state = self._queries.get(key)
            if state is not None:
                state.error = exc
                self._notify(key)
            logger.warning(f"cache_fetch_failed: key={key!r} error={exc!r}")
            raise
        self.set_query_data(key, data)

    def _on_fetch_done(self, key: QueryKey, task: asyncio.Task) -> None:
        state = self._queries.get(key)
        if state is not None and state.fetch_task is task:
            state.fetch_task = None
        if not task.cancelled():
            # Retrieve the exception so background refetch failures stay quiet.
            task.exception()

    def _cancel(self, key: QueryKey) -> bool:
        state = self._queries.get(key)
        if state is None or state.fetch_task is None:
            return False
        task, state.fetch_task = state.fetch_task, None
        if task.done():
            return False
        task.cancel()
        return True


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
