import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Optional

from langlens.engine.errors import ApiError, ServiceConnectionError, ServiceError, ServiceRequestError
from langlens.service.base import (
    DEFAULT_ASSISTANTS_PARAMS,
    DEFAULT_THREADS_PARAMS,
    ExecutionService,
    ListQueryParams,
)
from langlens.service.client import log_api_error
from langlens.utils import extract_text_from_content

UNTITLED = "Untitled"

THREADS_KEY = "threads"
ASSISTANTS_KEY = "assistants"

#########################################################################
## Thread titles ########################################################
#########################################################################

def text_of_message(message: Any) -> str:
    if isinstance(message, dict):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)
    if content is None:
        return ""
    return extract_text_from_content(content)


def title_of_thread(thread: dict) -> str:
    """Title of a listed thread: the first message with any text."""
    values = thread.get("values")
    messages = values.get("messages") if isinstance(values, dict) else None
    for message in messages or []:
        text = text_of_message(message)
        if text:
            return text
    return UNTITLED

#########################################################################
## Query cache ##########################################################
#########################################################################

@dataclass
class _Entry:
    value: Any
    fetched_at: float


class QueryCache:
    """
    Keyed results with a stale time.

    Keys are tuples whose first element names the query; prefix operations
    match on leading elements. Concurrent loads of one key share a task.
    """

    def __init__(self, stale_time: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.stale_time = stale_time
        self._clock = clock
        self._entries: dict[tuple, _Entry] = {}
        self._inflight: dict[tuple, asyncio.Task] = {}

    @staticmethod
    def _matches(key: tuple, prefix: tuple) -> bool:
        return key[:len(prefix)] == prefix

    def get_query_data(self, key: tuple) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def is_fresh(self, key: tuple) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() - entry.fetched_at < self.stale_time

    def set_query_data(self, key: tuple, value: Any) -> None:
        self._entries[key] = _Entry(value=value, fetched_at=self._clock())

    def set_queries_data(self, prefix: tuple, updater: Callable[[Any], Any]) -> None:
        """Apply `updater` to every cached value under `prefix`."""
        for key, entry in list(self._entries.items()):
            if self._matches(key, prefix):
                entry.value = updater(entry.value)

    def invalidate(self, prefix: tuple = ()) -> None:
        for key in [key for key in self._entries if self._matches(key, prefix)]:
            del self._entries[key]

    async def fetch(self, key: tuple, loader: Callable[[], Awaitable[Any]]) -> Any:
        if self.is_fresh(key):
            return self._entries[key].value
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._inflight[key] = task
            task.add_done_callback(lambda _task, key=key: self._inflight.pop(key, None))
        value = await asyncio.shield(task)
        self.set_query_data(key, value)
        return value

#########################################################################
## Thread and assistant lists ###########################################
#########################################################################

def _params_key(params: ListQueryParams) -> tuple[Hashable, ...]:
    return (params.limit, params.sort_by, params.sort_order)


def _api_error(message: str, exc: ServiceError) -> ApiError:
    status_code = exc.status_code if isinstance(exc, ServiceRequestError) else None
    if isinstance(exc, ServiceConnectionError):
        message = f"{message}: the server could not be reached"
    return ApiError(message, status_code=status_code, original_error=exc)


class ThreadQueries:
    """Cached thread/assistant listings on top of an ExecutionService."""

    def __init__(self, service: ExecutionService, cache: Optional[QueryCache] = None):
        self.service = service
        self.cache = cache or QueryCache()

    async def search_threads(self, params: ListQueryParams = DEFAULT_THREADS_PARAMS) -> list[dict]:
        key = (THREADS_KEY, "search") + _params_key(params)
        try:
            return await self.cache.fetch(key, lambda: self.service.search_threads(params))
        except ServiceError as exc:
            log_api_error("search_threads", exc, params.model_dump())
            raise _api_error("Failed to load threads", exc) from exc

    async def search_assistants(self, params: ListQueryParams = DEFAULT_ASSISTANTS_PARAMS) -> list[dict]:
        key = (ASSISTANTS_KEY, "search") + _params_key(params)
        try:
            return await self.cache.fetch(key, lambda: self.service.search_assistants(params))
        except ServiceError as exc:
            log_api_error("search_assistants", exc, params.model_dump())
            raise _api_error("Failed to load assistants", exc) from exc

    async def delete_thread(self, thread_id: str) -> None:
        """Delete a thread and drop it from every cached thread list."""
        try:
            await self.service.delete_thread(thread_id)
        except ServiceError as exc:
            log_api_error("delete_thread", exc, {"thread_id": thread_id})
            raise _api_error("Failed to delete thread", exc) from exc

        def _without(threads: Any) -> Any:
            if not isinstance(threads, list):
                return threads
            return [thread for thread in threads if thread.get("thread_id") != thread_id]

        self.cache.set_queries_data((THREADS_KEY, "search"), _without)

    def add_pending_thread(self, thread_id: str, first_message: Any = None) -> None:
        """Show a just-submitted thread at the top of the default list before it is refetched."""
        key = (THREADS_KEY, "search") + _params_key(DEFAULT_THREADS_PARAMS)
        threads = self.cache.get_query_data(key)
        if not isinstance(threads, list):
            return
        if any(thread.get("thread_id") == thread_id for thread in threads):
            return
        values = {"messages": [first_message]} if first_message is not None else {}
        pending = {"thread_id": thread_id, "status": "busy", "values": values}
        self.cache.set_query_data(key, [pending] + threads)

    def invalidate_threads(self) -> None:
        self.cache.invalidate((THREADS_KEY,))
