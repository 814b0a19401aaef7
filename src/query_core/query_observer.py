from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar, cast, override

from query_core.common import (
	FetchStatus,
	QueryStatus,
	STATIC,
	RefetchOn,
	is_valid_timeout,
	now,
	resolve_enabled,
	resolve_refetch_on,
	resolve_stale_time,
	time_until_stale,
)
from query_core.errors import should_throw_error
from query_core.events import QueryCacheNotifyEvent
from query_core.helpers import MISSING, call_flexible
from query_core.notify_manager import notify_manager
from query_core.options import FetchOptions, QueryOptions, validate_enabled
from query_core.retryer import can_fetch
from query_core.scheduling import (
	TimerHandleLike,
	TimerRegistry,
	create_future_on_loop,
	retrieve_exception,
)
from query_core.sharing import replace_data, same_value, shallow_equal_objects
from query_core.subscribable import Subscribable

if TYPE_CHECKING:
	from query_core.query import Query, QueryState
	from query_core.query_cache import QueryCache
	from query_core.query_client import QueryClient

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryObserverResult(Generic[T]):
	status: QueryStatus
	fetch_status: FetchStatus
	data: T | None
	data_updated_at: float
	error: Exception | None
	error_updated_at: float
	failure_count: int
	failure_reason: Exception | None
	error_update_count: int
	is_pending: bool
	is_success: bool
	is_error: bool
	is_loading: bool
	is_fetching: bool
	is_refetching: bool
	is_loading_error: bool
	is_refetch_error: bool
	is_paused: bool
	is_placeholder_data: bool
	is_fetched: bool
	is_fetched_after_mount: bool
	is_stale: bool
	is_enabled: bool
	promise: asyncio.Future[T]


RESULT_FIELDS = tuple(f.name for f in dataclasses.fields(QueryObserverResult))

QueryObserverListener = Callable[[QueryObserverResult[Any]], None]


class TrackedResult(Generic[T]):
	"""Read-only view of a result that records which fields are read."""

	__slots__: tuple[str, ...] = ("_result", "_observer", "_on_prop_tracked")

	def __init__(
		self,
		result: QueryObserverResult[T],
		observer: QueryObserver[T],
		on_prop_tracked: Callable[[str], None] | None = None,
	) -> None:
		self._result = result
		self._observer = observer
		self._on_prop_tracked = on_prop_tracked

	def __getattr__(self, name: str) -> Any:
		value = getattr(self._result, name)
		self._observer.track_prop(name)
		if self._on_prop_tracked is not None:
			self._on_prop_tracked(name)
		return value


# -----------------
# Fetch policy
# -----------------


def is_stale(query: Query[Any], options: QueryOptions[Any]) -> bool:
	return resolve_enabled(options.enabled, query) and query.is_stale_by_time(
		resolve_stale_time(options.stale_time, query)
	)


def should_load_on_mount(query: Query[Any], options: QueryOptions[Any]) -> bool:
	return (
		resolve_enabled(options.enabled, query)
		and query.state.data is None
		and not (query.state.status == "error" and options.retry_on_mount is False)
	)


def should_fetch_on(
	query: Query[Any], options: QueryOptions[Any], field: RefetchOn
) -> bool:
	# A static stale time wins over every refetch_on_* value, "always" included.
	if not resolve_enabled(options.enabled, query):
		return False
	if resolve_stale_time(options.stale_time, query) == STATIC:
		return False
	value = resolve_refetch_on(field, query)
	return value == "always" or (value is not False and is_stale(query, options))


def should_fetch_on_mount(query: Query[Any], options: QueryOptions[Any]) -> bool:
	return should_load_on_mount(query, options) or (
		query.state.data is not None
		and should_fetch_on(query, options, options.refetch_on_mount)
	)


def should_fetch_optionally(
	query: Query[Any],
	prev_query: Query[Any] | None,
	options: QueryOptions[Any],
	prev_options: QueryOptions[Any] | None,
) -> bool:
	prev_disabled = prev_options is not None and not resolve_enabled(
		prev_options.enabled, query
	)
	return (query is not prev_query or prev_disabled) and is_stale(query, options)


class QueryObserver(Subscribable[QueryObserverListener], Generic[T]):
	"""
	Subscription handle bound to one query at a time.

	Derives a `QueryObserverResult` from the query state (applying `select`,
	`placeholder_data` and structural sharing), decides when to fetch, and
	notifies its listeners when a field they care about changes.

	Options are keyword arguments. `set_options` merges the new keywords into
	the ones the observer already has.
	"""

	options: QueryOptions[T]

	_client: QueryClient
	_raw_options: dict[str, Any]
	_current_query: Query[T]
	_current_query_initial_state: QueryState[T]
	_current_result: QueryObserverResult[T]
	_current_result_state: QueryState[T] | None
	_current_result_options: QueryOptions[T] | None
	_current_thenable: asyncio.Future[T]
	_select_error: Exception | None
	_select_fn: Callable[[Any], Any] | None
	_select_result: Any
	_last_query_with_defined_data: Query[T] | None
	_stale_timeout: TimerHandleLike | None
	_refetch_interval: TimerHandleLike | None
	_current_refetch_interval: float | bool
	_tracked_props: set[str]

	def __init__(self, client: QueryClient, **options: Any) -> None:
		super().__init__()
		self._client = client
		self._raw_options = {}
		self._current_result_state = None
		self._current_result_options = None
		self._current_thenable = self._new_thenable()
		self._select_error = None
		self._select_fn = None
		self._select_result = None
		self._last_query_with_defined_data = None
		self._stale_timeout = None
		self._refetch_interval = None
		self._current_refetch_interval = False
		self._tracked_props = set()
		self._set_options(options, emit=False)

	@property
	def _cache(self) -> QueryCache:
		return self._client.get_query_cache()

	@property
	def _timers(self) -> TimerRegistry:
		return self._cache.timers

	# -----------------
	# Subscription
	# -----------------

	@override
	def on_subscribe(self) -> None:
		if self.listener_count() == 1:
			self._current_query.add_observer(self)
			if should_fetch_on_mount(self._current_query, self.options):
				self._execute_fetch()
			else:
				self.update_result()
			self._update_timers()

	@override
	def on_unsubscribe(self) -> None:
		if not self.has_listeners():
			self.dispose()

	def dispose(self) -> None:
		self._listeners.clear()
		self._clear_stale_timeout()
		self._clear_refetch_interval()
		self._current_query.remove_observer(self)

	def should_fetch_on_reconnect(self) -> bool:
		return should_fetch_on(
			self._current_query, self.options, self.options.refetch_on_reconnect
		)

	def should_fetch_on_window_focus(self) -> bool:
		return should_fetch_on(
			self._current_query, self.options, self.options.refetch_on_window_focus
		)

	# -----------------
	# Options
	# -----------------

	def set_options(self, **options: Any) -> None:
		self._set_options(options, emit=True)

	def _set_options(self, options: Mapping[str, Any], *, emit: bool) -> None:
		prev_options = getattr(self, "options", None)
		prev_query: Query[T] | None = getattr(self, "_current_query", None)

		raw = {**self._raw_options, **options}
		resolved = cast(QueryOptions[T], self._client.default_query_options(raw))
		validate_enabled(resolved.enabled)
		if callable(resolved.enabled):
			target = prev_query or self._cache.build(self._client, resolved)
			resolve_enabled(resolved.enabled, target)

		self._raw_options = raw
		self.options = resolved
		self._update_query()
		query = self._current_query
		query.set_options(resolved)

		if emit:
			self._cache.notify(
				QueryCacheNotifyEvent("observerOptionsUpdated", query, observer=self)
			)

		mounted = self.has_listeners()
		if mounted and should_fetch_optionally(query, prev_query, resolved, prev_options):
			self._execute_fetch()

		self.update_result()

		if prev_options is None:
			return
		query_changed = query is not prev_query
		enabled_changed = resolve_enabled(resolved.enabled, query) != resolve_enabled(
			prev_options.enabled, query
		)
		if mounted and (
			query_changed
			or enabled_changed
			or resolve_stale_time(resolved.stale_time, query)
			!= resolve_stale_time(prev_options.stale_time, query)
		):
			self._update_stale_timeout()

		next_interval = self._compute_refetch_interval()
		if mounted and (
			query_changed
			or enabled_changed
			or next_interval != self._current_refetch_interval
		):
			self._update_refetch_interval(next_interval)

	def _update_query(self) -> None:
		query = cast("Query[T]", self._cache.build(self._client, self.options))
		prev_query: Query[T] | None = getattr(self, "_current_query", None)
		if query is prev_query:
			return
		# Detach and attach in one transaction so no listener sees the
		# observer on zero or two queries.
		with notify_manager.batching():
			self._current_query = query
			self._current_query_initial_state = query.state
			if self.has_listeners():
				if prev_query is not None:
					prev_query.remove_observer(self)
				query.add_observer(self)

	# -----------------
	# Results
	# -----------------

	def get_current_result(self) -> QueryObserverResult[T]:
		return self._current_result

	def get_current_query(self) -> Query[T]:
		return self._current_query

	def get_optimistic_result(self, **options: Any) -> QueryObserverResult[T]:
		defaulted = cast(
			QueryOptions[T],
			self._client.default_query_options({**self._raw_options, **options}),
		)
		query = cast("Query[T]", self._cache.build(self._client, defaulted))
		result = self._create_result(query, defaulted, optimistic=True)
		if not shallow_equal_objects(self._current_result, result):
			self._current_result = result
			self._current_result_options = self.options
			self._current_result_state = self._current_query.state
		return result

	def track_result(
		self,
		result: QueryObserverResult[T],
		on_prop_tracked: Callable[[str], None] | None = None,
	) -> TrackedResult[T]:
		return TrackedResult(result, self, on_prop_tracked)

	def track_prop(self, name: str) -> None:
		self._tracked_props.add(name)

	def should_throw_error(self, result: QueryObserverResult[T] | None = None) -> bool:
		"""Whether an adapter should re-raise the error held by `result`."""
		result = result or self._current_result
		return (
			result.is_error
			and not result.is_fetching
			and should_throw_error(
				self.options.throw_on_error, result.error, self._current_query
			)
		)

	def on_query_update(self) -> None:
		self.update_result()
		if self.has_listeners():
			self._update_timers()

	def update_result(self) -> None:
		prev_result: QueryObserverResult[T] | None = getattr(
			self, "_current_result", None
		)
		next_result = self._create_result(self._current_query, self.options)
		self._current_result_state = self._current_query.state
		self._current_result_options = self.options
		if self._current_result_state.data is not None:
			self._last_query_with_defined_data = self._current_query

		if prev_result is None:
			self._current_result = next_result
			return
		if shallow_equal_objects(next_result, prev_result):
			return
		self._current_result = next_result
		self._notify(listeners=self._should_notify_listeners(prev_result, next_result))

	def _should_notify_listeners(
		self, prev: QueryObserverResult[T], current: QueryObserverResult[T]
	) -> bool:
		props = self.options.notify_on_change_props
		value = props() if callable(props) else props
		if value == "all" or (value is None and not self._tracked_props):
			return True
		included = set(value if value is not None else self._tracked_props)
		if self.options.throw_on_error:
			included.add("error")
		return any(
			not same_value(getattr(current, name), getattr(prev, name))
			for name in RESULT_FIELDS
			if name in included
		)

	def _notify(self, *, listeners: bool) -> None:
		with notify_manager.batching():
			if listeners:
				result = self._current_result
				for listener in self.iter_listeners():
					notify_manager.schedule(lambda listener=listener: listener(result))
			self._cache.notify(
				QueryCacheNotifyEvent(
					"observerResultsUpdated", self._current_query, observer=self
				)
			)

	def _create_result(
		self, query: Query[T], options: QueryOptions[T], *, optimistic: bool = False
	) -> QueryObserverResult[T]:
		prev_query: Query[T] | None = getattr(self, "_current_query", None)
		prev_result: QueryObserverResult[T] | None = getattr(
			self, "_current_result", None
		)
		prev_result_state = self._current_result_state
		prev_result_options = self._current_result_options
		query_initial_state = (
			query.state if query is not prev_query else self._current_query_initial_state
		)

		state = query.state
		fetch_status = state.fetch_status
		status = state.status
		data: Any = state.data
		error = state.error
		error_updated_at = state.error_updated_at

		if optimistic:
			mounted = self.has_listeners()
			fetch_on_mount = not mounted and should_fetch_on_mount(query, options)
			fetch_optionally = mounted and should_fetch_optionally(
				query, prev_query, options, self.options
			)
			if fetch_on_mount or fetch_optionally:
				fetch_status = (
					"fetching"
					if can_fetch(query.options.network_mode, query.online_manager)
					else "paused"
				)
				if data is None:
					error = None
					status = "pending"

		is_placeholder_data = False
		skip_select = False
		if options.placeholder_data is not None and data is None and status == "pending":
			prev_placeholder = (
				prev_result_options.placeholder_data
				if prev_result_options is not None
				else MISSING
			)
			if (
				prev_result is not None
				and prev_result.is_placeholder_data
				and options.placeholder_data is prev_placeholder
			):
				placeholder = prev_result.data
				skip_select = True
			else:
				placeholder = options.placeholder_data
				if callable(placeholder):
					last = self._last_query_with_defined_data
					placeholder = call_flexible(
						placeholder, last.state.data if last else None, last
					)
			if placeholder is not None:
				status = "success"
				data = replace_data(
					prev_result.data if prev_result else None, placeholder, options
				)
				is_placeholder_data = True

		if options.select is not None and data is not None and not skip_select:
			memoized = (
				prev_result is not None
				and prev_result_state is not None
				and data is prev_result_state.data
				and options.select is self._select_fn
				and self._select_error is None
			)
			if memoized:
				data = self._select_result
			else:
				self._select_fn = options.select
				try:
					selected = options.select(data)
				except Exception as exc:
					self._select_error = exc
				else:
					data = replace_data(
						prev_result.data if prev_result else None, selected, options
					)
					self._select_result = data
					self._select_error = None

		if self._select_error is not None:
			error = self._select_error
			data = self._select_result
			error_updated_at = now()
			status = "error"

		is_fetching = fetch_status == "fetching"
		is_pending = status == "pending"
		is_error = status == "error"
		has_data = data is not None

		promise = self._settle_thenable(query, prev_query, status, data, error)

		return QueryObserverResult(
			status=status,
			fetch_status=fetch_status,
			data=data,
			data_updated_at=state.data_updated_at,
			error=error,
			error_updated_at=error_updated_at,
			failure_count=state.fetch_failure_count,
			failure_reason=state.fetch_failure_reason,
			error_update_count=state.error_update_count,
			is_pending=is_pending,
			is_success=status == "success",
			is_error=is_error,
			is_loading=is_pending and is_fetching,
			is_fetching=is_fetching,
			is_refetching=is_fetching and not is_pending,
			is_loading_error=is_error and not has_data,
			is_refetch_error=is_error and has_data,
			is_paused=fetch_status == "paused",
			is_placeholder_data=is_placeholder_data,
			is_fetched=state.data_update_count > 0 or state.error_update_count > 0,
			is_fetched_after_mount=(
				state.data_update_count > query_initial_state.data_update_count
				or state.error_update_count > query_initial_state.error_update_count
			),
			is_stale=is_stale(query, options),
			is_enabled=resolve_enabled(options.enabled, query),
			promise=promise,
		)

	# -----------------
	# Thenable
	# -----------------

	def _new_thenable(self) -> asyncio.Future[T]:
		fut: asyncio.Future[T] = create_future_on_loop()
		fut.add_done_callback(retrieve_exception)
		return fut

	def _settle_thenable(
		self,
		query: Query[T],
		prev_query: Query[T] | None,
		status: QueryStatus,
		data: Any,
		error: Exception | None,
	) -> asyncio.Future[T]:
		def finalize(fut: asyncio.Future[T]) -> None:
			if fut.done():
				return
			if status == "error" and error is not None:
				fut.set_exception(error)
			elif data is not None:
				fut.set_result(data)

		def recreate() -> asyncio.Future[T]:
			fut = self._new_thenable()
			self._current_thenable = fut
			finalize(fut)
			return fut

		prev = self._current_thenable
		if not prev.done():
			if prev_query is None or query.query_hash == prev_query.query_hash:
				finalize(prev)
			return prev
		prev_error = prev.exception()
		if prev_error is None:
			if status == "error" or data is not prev.result():
				return recreate()
			return prev
		if status != "error" or error is not prev_error:
			return recreate()
		return prev

	# -----------------
	# Fetching
	# -----------------

	def refetch(
		self, *, throw_on_error: bool = False, cancel_refetch: bool = True
	) -> asyncio.Task[QueryObserverResult[T]]:
		"""Fetch now, whether or not the observer is enabled."""
		fetch = self._execute_fetch(FetchOptions(cancel_refetch=cancel_refetch))

		async def run() -> QueryObserverResult[T]:
			try:
				await fetch
			except Exception:
				if throw_on_error:
					raise
			self.update_result()
			return self._current_result

		task = self._cache.tasks.create(run(), name="query_observer.refetch")
		task.add_done_callback(retrieve_exception)
		return task

	async def fetch_optimistic(self, **options: Any) -> QueryObserverResult[T]:
		defaulted = cast(
			QueryOptions[T],
			self._client.default_query_options({**self._raw_options, **options}),
		)
		query = cast("Query[T]", self._cache.build(self._client, defaulted))
		await query.fetch()
		return self._create_result(query, defaulted)

	def _execute_fetch(self, fetch_options: FetchOptions | None = None) -> asyncio.Task[T]:
		self._update_query()
		return self._current_query.fetch(self.options, fetch_options)

	# -----------------
	# Timers
	# -----------------

	def _update_timers(self) -> None:
		self._update_stale_timeout()
		self._update_refetch_interval(self._compute_refetch_interval())

	def _update_stale_timeout(self) -> None:
		self._clear_stale_timeout()
		stale_time = resolve_stale_time(self.options.stale_time, self._current_query)
		if self._current_result.is_stale or not is_valid_timeout(stale_time):
			return
		remaining = time_until_stale(
			self._current_result.data_updated_at, cast(float, stale_time)
		)

		def on_stale() -> None:
			self._stale_timeout = None
			if not self._current_result.is_stale:
				self.update_result()

		# Fire just after the data ages out.
		self._stale_timeout = self._timers.later(remaining + 0.001, on_stale)

	def _compute_refetch_interval(self) -> float | bool:
		interval = self.options.refetch_interval
		if callable(interval):
			interval = call_flexible(interval, self._current_query)
		return interval if interval is not None else False

	def _update_refetch_interval(self, next_interval: float | bool) -> None:
		self._clear_refetch_interval()
		self._current_refetch_interval = next_interval
		if (
			not resolve_enabled(self.options.enabled, self._current_query)
			or not is_valid_timeout(next_interval)
			or next_interval == 0
		):
			return

		def tick() -> None:
			if (
				self.options.refetch_interval_in_background
				or self._client.focus_manager.is_focused()
			):
				logger.debug("Interval refetch of %s", self._current_query.query_hash)
				self._execute_fetch()

		self._refetch_interval = self._timers.repeat(cast(float, next_interval), tick)

	def _clear_stale_timeout(self) -> None:
		if self._stale_timeout is not None:
			self._stale_timeout.cancel()
			self._stale_timeout = None

	def _clear_refetch_interval(self) -> None:
		if self._refetch_interval is not None:
			self._refetch_interval.cancel()
			self._refetch_interval = None
