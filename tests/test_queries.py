"""Tests for the cached thread and assistant queries."""

import asyncio

import pytest
from conftest import human

from langlens.engine.errors import ApiError, ServiceConnectionError, ServiceRequestError
from langlens.service.base import DEFAULT_THREADS_PARAMS, ListQueryParams
from langlens.service.queries import UNTITLED, QueryCache, ThreadQueries, title_of_thread


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_request():
    cache = QueryCache()
    calls = []

    async def loader():
        calls.append(1)
        await asyncio.sleep(0)
        return ["x"]

    first, second = await asyncio.gather(cache.fetch(("k",), loader), cache.fetch(("k",), loader))

    assert first == second == ["x"]
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stale_entries_reload():
    clock = FakeClock()
    cache = QueryCache(stale_time=5.0, clock=clock)
    results = iter([["a"], ["b"]])

    async def loader():
        return next(results)

    assert await cache.fetch(("k",), loader) == ["a"]
    clock.now = 4.0
    assert await cache.fetch(("k",), loader) == ["a"]
    clock.now = 6.0
    assert await cache.fetch(("k",), loader) == ["b"]


def test_prefix_updates_and_invalidation():
    cache = QueryCache()
    cache.set_query_data(("threads", "search", 50), [1, 2])
    cache.set_query_data(("threads", "search", 10), [2])
    cache.set_query_data(("assistants", "search"), [2])

    cache.set_queries_data(("threads",), lambda items: [i for i in items if i != 2])

    assert cache.get_query_data(("threads", "search", 50)) == [1]
    assert cache.get_query_data(("threads", "search", 10)) == []
    assert cache.get_query_data(("assistants", "search")) == [2]

    cache.invalidate(("threads",))
    assert cache.get_query_data(("threads", "search", 50)) is None
    assert cache.get_query_data(("assistants", "search")) == [2]


@pytest.mark.asyncio
async def test_search_threads_uses_params_and_cache(service):
    service.threads = [{"thread_id": "t1"}]
    queries = ThreadQueries(service)

    await queries.search_threads()
    await queries.search_threads()

    assert service.calls == [("search_threads", 50, "updated_at", "desc")]


@pytest.mark.asyncio
async def test_search_assistants_defaults(service):
    service.assistants = [{"assistant_id": "a"}]
    queries = ThreadQueries(service)

    assert await queries.search_assistants() == [{"assistant_id": "a"}]
    assert service.calls == [("search_assistants", 50, "name", "asc")]


@pytest.mark.asyncio
async def test_delete_thread_patches_cached_lists(service):
    service.threads = [{"thread_id": "t1"}, {"thread_id": "t2"}]
    queries = ThreadQueries(service)
    await queries.search_threads()
    await queries.search_threads(ListQueryParams(limit=10))

    await queries.delete_thread("t1")
    service.calls.clear()

    assert await queries.search_threads() == [{"thread_id": "t2"}]
    assert await queries.search_threads(ListQueryParams(limit=10)) == [{"thread_id": "t2"}]
    assert service.calls == []


@pytest.mark.asyncio
async def test_failures_become_api_errors(service):
    service.search_error = ServiceRequestError("nope", status_code=500)
    queries = ThreadQueries(service)

    with pytest.raises(ApiError) as info:
        await queries.search_threads()

    assert info.value.status_code == 500
    assert isinstance(info.value.original_error, ServiceRequestError)


@pytest.mark.asyncio
async def test_connection_failures_mention_server(service):
    service.search_error = ServiceConnectionError("refused")
    queries = ThreadQueries(service)

    with pytest.raises(ApiError, match="could not be reached"):
        await queries.delete_thread("t1")


@pytest.mark.asyncio
async def test_pending_thread_is_prepended_once(service):
    service.threads = [{"thread_id": "old"}]
    queries = ThreadQueries(service)
    await queries.search_threads()

    queries.add_pending_thread("new", human("h1", "first words"))
    queries.add_pending_thread("new", human("h1", "first words"))

    threads = await queries.search_threads()
    assert [t["thread_id"] for t in threads] == ["new", "old"]
    assert title_of_thread(threads[0]) == "first words"


def test_pending_thread_ignored_without_cached_list(service):
    queries = ThreadQueries(service)

    queries.add_pending_thread("new")

    assert queries.cache.get_query_data(("threads", "search", 50, "updated_at", "desc")) is None


def test_title_of_thread():
    assert title_of_thread({"values": {"messages": [{"content": "  "}, {"content": "Hi there"}]}}) == "Hi there"
    assert title_of_thread({"values": {"messages": []}}) == UNTITLED
    assert title_of_thread({"values": None}) == UNTITLED


def test_list_params_validate():
    with pytest.raises(ValueError):
        ListQueryParams(limit=0)
    with pytest.raises(ValueError):
        ListQueryParams(sort_order="sideways")
    assert DEFAULT_THREADS_PARAMS.limit == 50
