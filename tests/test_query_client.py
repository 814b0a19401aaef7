import asyncio
import math
from typing import Any

import pytest
from query_core import (
	ConfigurationError,
	FocusManager,
	OnlineManager,
	QueryCache,
	QueryClient,
	QueryObserver,
)
from query_core.test_helpers import flush, wait_for


class Boom(Exception):
	pass


def counting(prefix: str = "v"):
	calls = {"n": 0}

	async def fn() -> str:
		calls["n"] += 1
		return f"{prefix}{calls['n']}"

	return fn, calls


def gated(value: str = "data"):
	release = asyncio.Event()

	async def fn() -> str:
		await release.wait()
		return value

	return fn, release


# ─────────────────────────────────────────────────────────────────────────────
# Fetching
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_query_returns_fresh_cache(client: QueryClient):
	fn, calls = counting()
	assert await client.fetch_query(query_key=["user"], query_fn=fn, stale_time=60) == "v1"
	assert await client.fetch_query(query_key=["user"], query_fn=fn, stale_time=60) == "v1"
	assert calls["n"] == 1

	# Default stale time of zero: always refetches.
	assert await client.fetch_query(query_key=["user"], query_fn=fn) == "v2"


@pytest.mark.asyncio
async def test_fetch_query_does_not_retry_by_default(client: QueryClient):
	calls = 0

	async def fn() -> str:
		nonlocal calls
		calls += 1
		raise Boom()

	with pytest.raises(Boom):
		await client.fetch_query(query_key=["once"], query_fn=fn)
	assert calls == 1


def flaky(failures: int):
	calls = {"n": 0}

	async def fn() -> str:
		calls["n"] += 1
		if calls["n"] <= failures:
			raise Boom(f"fail {calls['n']}")
		return "ok"

	return fn, calls


@pytest.mark.asyncio
async def test_fetch_query_honors_client_retry_defaults():
	client = QueryClient(default_options={"retry": 2, "retry_delay": 0})
	fn, calls = flaky(2)
	assert await client.fetch_query(query_key=["flaky"], query_fn=fn) == "ok"
	assert calls["n"] == 3
	client.get_query_cache().dispose()


@pytest.mark.asyncio
async def test_fetch_query_honors_key_retry_defaults():
	client = QueryClient()
	client.set_query_defaults(["flaky"], {"retry": 1, "retry_delay": 0})
	fn, calls = flaky(1)
	assert await client.fetch_query(query_key=["flaky", 1], query_fn=fn) == "ok"
	assert calls["n"] == 2

	other, other_calls = flaky(1)
	with pytest.raises(Boom):
		await client.fetch_query(query_key=["other"], query_fn=other)
	assert other_calls["n"] == 1
	client.get_query_cache().dispose()


@pytest.mark.asyncio
async def test_injected_cache_is_used():
	cache = QueryCache()
	events: list[str] = []
	cache.subscribe(lambda event: events.append(event.type))
	client = QueryClient(query_cache=cache)
	assert client.get_query_cache() is cache

	await client.fetch_query(query_key=["injected"], query_fn=lambda: "x")
	assert events == ["queryAdded", "queryUpdated", "queryUpdated"]
	cache.dispose()


@pytest.mark.asyncio
async def test_prefetch_query_swallows_errors(client: QueryClient):
	async def fn() -> str:
		raise Boom()

	assert await client.prefetch_query(query_key=["pre"], query_fn=fn) is None
	state = client.get_query_state(["pre"])
	assert state is not None
	assert state.status == "error"


@pytest.mark.asyncio
async def test_ensure_query_data(client: QueryClient):
	fn, calls = counting()
	assert await client.ensure_query_data(query_key=["ensure"], query_fn=fn) == "v1"
	assert await client.ensure_query_data(query_key=["ensure"], query_fn=fn) == "v1"
	assert calls["n"] == 1

	value = await client.ensure_query_data(
		query_key=["ensure"], query_fn=fn, revalidate_if_stale=True
	)
	assert value == "v1"
	assert await wait_for(lambda: client.get_query_data(["ensure"]) == "v2")


# ─────────────────────────────────────────────────────────────────────────────
# Reading and writing data
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_set_and_get_query_data(client: QueryClient):
	assert client.get_query_data(["count"]) is None
	assert client.set_query_data(["count"], 1) == 1
	assert client.set_query_data(["count"], lambda prev: prev + 1) == 2
	assert client.get_query_data(["count"]) == 2

	state = client.get_query_state(["count"])
	assert state is not None
	assert state.status == "success"
	assert state.data_update_count == 2


@pytest.mark.asyncio
async def test_set_query_data_none_is_a_noop(client: QueryClient):
	cache = client.get_query_cache()
	assert client.set_query_data(["empty"], lambda _prev: None) is None
	assert cache.find(query_key=["empty"]) is None

	client.set_query_data(["kept"], "value")
	assert client.set_query_data(["kept"], None) is None
	assert client.get_query_data(["kept"]) == "value"


@pytest.mark.asyncio
async def test_set_query_data_updated_at(client: QueryClient):
	client.set_query_data(["dated"], "x", updated_at=123.0)
	state = client.get_query_state(["dated"])
	assert state is not None
	assert state.data_updated_at == 123.0


@pytest.mark.asyncio
async def test_queries_data_by_filter(client: QueryClient):
	client.set_query_data(["todos", 1], 1)
	client.set_query_data(["todos", 2], 2)
	client.set_query_data(["users", 1], 10)

	updated = client.set_queries_data(lambda prev: prev * 100, query_key=["todos"])
	assert sorted(value for _, value in updated) == [100, 200]
	assert sorted(
		(tuple(key), value) for key, value in client.get_queries_data(query_key=["todos"])
	) == [(("todos", 1), 100), (("todos", 2), 200)]
	assert client.get_query_data(["users", 1]) == 10


@pytest.mark.asyncio
async def test_is_fetching_counts_in_flight_queries(client: QueryClient):
	fn_a, release_a = gated("a")
	fn_b, release_b = gated("b")
	task_a = client.fetch_query(query_key=["a"], query_fn=fn_a)
	task_b = client.fetch_query(query_key=["b"], query_fn=fn_b)

	assert client.is_fetching() == 2
	assert client.is_fetching(query_key=["a"]) == 1

	release_a.set()
	release_b.set()
	await asyncio.gather(task_a, task_b)
	assert client.is_fetching() == 0


# ─────────────────────────────────────────────────────────────────────────────
# Invalidation and cancellation
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_invalidate_refetch_types(client: QueryClient):
	cache = client.get_query_cache()
	fn_active, active_calls = counting("a")
	fn_idle, idle_calls = counting("i")

	observer = QueryObserver(
		client, query_key=["todos", "active"], query_fn=fn_active, stale_time=math.inf
	)
	observer.subscribe(lambda _result: None)
	assert await wait_for(lambda: active_calls["n"] == 1)
	await client.fetch_query(query_key=["todos", "idle"], query_fn=fn_idle)
	idle_query = cache.find(query_key=["todos", "idle"])
	assert idle_query is not None

	await client.invalidate_queries(query_key=["todos"])
	assert active_calls["n"] == 2
	assert idle_calls["n"] == 1
	assert idle_query.state.is_invalidated

	await client.invalidate_queries(query_key=["todos"], refetch_type="all")
	assert active_calls["n"] == 3
	assert idle_calls["n"] == 2

	await client.invalidate_queries(query_key=["todos"], refetch_type="none")
	assert active_calls["n"] == 3
	assert idle_calls["n"] == 2
	assert all(q.state.is_invalidated for q in cache.find_all(query_key=["todos"]))


@pytest.mark.asyncio
async def test_refetch_queries_can_raise(client: QueryClient):
	async def fn() -> str:
		raise Boom()

	observer = QueryObserver(client, query_key=["broken"], query_fn=fn, retry=False)
	observer.subscribe(lambda _result: None)
	assert await wait_for(lambda: observer.get_current_result().is_error)

	await client.refetch_queries(query_key=["broken"])
	with pytest.raises(Boom):
		await client.refetch_queries(query_key=["broken"], throw_on_error=True)


@pytest.mark.asyncio
async def test_cancel_queries_reverts_state(client: QueryClient):
	fn, release = gated("new")
	client.set_query_data(["cancel"], "old")
	fetch = client.fetch_query(query_key=["cancel"], query_fn=fn)
	await flush()

	await client.cancel_queries(query_key=["cancel"])
	state = client.get_query_state(["cancel"])
	assert state is not None
	assert state.data == "old"
	assert state.fetch_status == "idle"
	assert await fetch == "old"
	release.set()


@pytest.mark.asyncio
async def test_remove_queries(client: QueryClient):
	client.set_query_data(["todos", 1], 1)
	client.set_query_data(["users", 1], 1)
	client.remove_queries(query_key=["todos"])
	assert client.get_query_data(["todos", 1]) is None
	assert client.get_query_data(["users", 1]) == 1

	client.clear()
	assert len(client.get_query_cache()) == 0


@pytest.mark.asyncio
async def test_reset_queries_restores_initial_state_and_refetches(client: QueryClient):
	fn, calls = counting()
	observer = QueryObserver(client, query_key=["reset"], query_fn=fn, stale_time=math.inf)
	observer.subscribe(lambda _result: None)
	assert await wait_for(lambda: calls["n"] == 1)

	client.set_query_data(["reset"], "edited")
	await client.reset_queries(query_key=["reset"])
	assert calls["n"] == 2
	assert client.get_query_data(["reset"]) == "v2"


# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────


def test_default_options_merge_order():
	client = QueryClient(default_options={"stale_time": 10, "retry": 1})
	client.set_query_defaults(["todos"], {"stale_time": 20})
	client.set_query_defaults(["todos", "detail"], {"gc_time": 5})

	options = client.default_query_options({"query_key": ["todos", "detail", 1], "retry": 2})
	assert options.stale_time == 20
	assert options.gc_time == 5
	assert options.retry == 2

	other = client.default_query_options({"query_key": ["users"]})
	assert other.stale_time == 10
	assert other.retry == 1
	assert other.gc_time is None


def test_set_query_defaults_replaces_same_key():
	client = QueryClient()
	client.set_query_defaults(["todos"], {"stale_time": 1})
	client.set_query_defaults(["todos"], {"retry": False})
	assert client.get_query_defaults(["todos", 1]) == {"retry": False}


def test_invalid_defaults_are_rejected():
	with pytest.raises(ConfigurationError):
		QueryClient(default_options={"stale": 1})
	client = QueryClient()
	with pytest.raises(ConfigurationError):
		client.set_query_defaults(["x"], {"refetch": True})
	with pytest.raises(ConfigurationError):
		client.set_default_options({"bogus": 1})
	with pytest.raises(TypeError):
		client.default_query_options({"stale_time": 1})


def test_query_hash_uses_key_hash_fn():
	client = QueryClient()
	options = client.default_query_options(
		{"query_key": ["a", 1], "query_key_hash_fn": lambda key: "custom"}
	)
	assert options.query_hash == "custom"
	plain = client.default_query_options({"query_key": ["a", 1]})
	assert plain.query_hash == '["a",1]'


@pytest.mark.asyncio
async def test_custom_hash_fn_is_used_for_lookup(client: QueryClient):
	def hash_fn(key: Any) -> str:
		return "/".join(str(part) for part in key)

	await client.fetch_query(query_key=["a", 1], query_fn=lambda: "x", query_key_hash_fn=hash_fn)
	query = client.get_query_cache().find(query_key=["a", 1])
	assert query is not None
	assert query.query_hash == "a/1"


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────


def test_mount_is_reference_counted():
	focus = FocusManager()
	online = OnlineManager()
	client = QueryClient(focus_manager=focus, online_manager=online)

	client.mount()
	client.mount()
	assert focus.has_listeners()
	assert online.has_listeners()

	client.unmount()
	assert focus.has_listeners()
	client.unmount()
	assert not focus.has_listeners()
	assert not online.has_listeners()


@pytest.mark.asyncio
async def test_reconnect_refetches_through_injected_manager():
	online = OnlineManager()
	client = QueryClient(online_manager=online)
	client.mount()
	fn, calls = counting()
	observer = QueryObserver(client, query_key=["net"], query_fn=fn)
	observer.subscribe(lambda _result: None)
	assert await wait_for(lambda: calls["n"] == 1)

	online.set_online(False)
	online.set_online(True)
	assert await wait_for(lambda: calls["n"] == 2)

	client.unmount()
	client.get_query_cache().dispose()
	await flush()
