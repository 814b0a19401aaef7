from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar, cast, override

from query_core.common import (
	FetchStatus,
	QueryKey,
	QueryStatus,
	STATIC,
	now,
	resolve_enabled,
	resolve_stale_time,
	time_until_stale,
)
from query_core.errors import (
	MissingQueryFnError,
	NoDataError,
	QueryCancelledError,
	is_cancelled_error,
)
from query_core.events import QueryCacheNotifyEvent
from query_core.focus_manager import FocusManager, focus_manager as default_focus_manager
from query_core.helpers import Disposable, call_flexible
from query_core.notify_manager import notify_manager
from query_core.online_manager import (
	OnlineManager,
	online_manager as default_online_manager,
)
from query_core.options import FetchOptions, QueryOptions
from query_core.removable import Removable
from query_core.retryer import Retryer, can_fetch
from query_core.scheduling import retrieve_exception
from query_core.sharing import replace_data

if TYPE_CHECKING:
	from query_core.query_cache import QueryCache
	from query_core.query_client import QueryClient
	from query_core.query_observer import QueryObserver

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryState(Generic[T]):
	data: T | None = None
	data_update_count: int = 0
	data_updated_at: float = 0.0
	error: Exception | None = None
	error_update_count: int = 0
	error_updated_at: float = 0.0
	fetch_failure_count: int = 0
	fetch_failure_reason: Exception | None = None
	fetch_meta: Mapping[str, Any] | None = None
	is_invalidated: bool = False
	status: QueryStatus = "pending"
	fetch_status: FetchStatus = "idle"

	def replace(self, **changes: Any) -> QueryState[T]:
		return dataclasses.replace(self, **changes)


# -----------------
# Actions
# -----------------


@dataclass(frozen=True, slots=True)
class FetchAction:
	type: ClassVar[str] = "fetch"
	meta: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class SuccessAction:
	type: ClassVar[str] = "success"
	data: Any
	data_updated_at: float | None = None
	manual: bool = False


@dataclass(frozen=True, slots=True)
class ErrorAction:
	type: ClassVar[str] = "error"
	error: Exception


@dataclass(frozen=True, slots=True)
class FailedAction:
	type: ClassVar[str] = "failed"
	failure_count: int
	error: Exception


@dataclass(frozen=True, slots=True)
class PauseAction:
	type: ClassVar[str] = "pause"


@dataclass(frozen=True, slots=True)
class ContinueAction:
	type: ClassVar[str] = "continue"


@dataclass(frozen=True, slots=True)
class InvalidateAction:
	type: ClassVar[str] = "invalidate"


@dataclass(frozen=True, slots=True)
class SetStateAction:
	type: ClassVar[str] = "set_state"
	state: QueryState[Any]


Action = (
	FetchAction
	| SuccessAction
	| ErrorAction
	| FailedAction
	| PauseAction
	| ContinueAction
	| InvalidateAction
	| SetStateAction
)


class QueryFunctionContext:
	"""Argument handed to a query function.

	`signal` is set when the fetch is cancelled. Reading it tells the query
	that the function cooperates with cancellation, so losing the last
	observer cancels the fetch instead of letting it finish.
	"""

	__slots__: tuple[str, ...] = ("client", "query_key", "meta", "_signal", "_on_read")

	client: QueryClient | None
	query_key: QueryKey
	meta: Mapping[str, Any] | None

	def __init__(
		self,
		client: QueryClient | None,
		query_key: QueryKey,
		meta: Mapping[str, Any] | None,
		signal: asyncio.Event,
		on_read: Any,
	) -> None:
		self.client = client
		self.query_key = query_key
		self.meta = meta
		self._signal = signal
		self._on_read = on_read

	@property
	def signal(self) -> asyncio.Event:
		self._on_read()
		return self._signal


def get_default_state(options: QueryOptions[T]) -> QueryState[T]:
	initial = options.initial_data
	data = cast(T | None, initial() if callable(initial) else initial)
	if data is None:
		return QueryState()
	updated_at = options.initial_data_updated_at
	if callable(updated_at):
		updated_at = updated_at()
	return QueryState(
		data=data,
		data_updated_at=updated_at if updated_at is not None else now(),
		status="success",
	)


class Query(Removable, Disposable, Generic[T]):
	"""
	One cache entry: the state machine for a single query hash.

	Owns the current `QueryState`, the in-flight fetch (at most one) and the
	list of observers attached to it. Every state change goes through
	`_dispatch`, which notifies observers and the cache in one batch.
	"""

	query_key: QueryKey
	query_hash: str
	options: QueryOptions[T]
	state: QueryState[T]
	observers: list[QueryObserver[T]]

	_cache: QueryCache
	_client: QueryClient | None
	_initial_state: QueryState[T]
	_revert_state: QueryState[T] | None
	_retryer: Retryer[T] | None
	_task: asyncio.Task[T] | None
	_abort_signal_consumed: bool

	def __init__(
		self,
		*,
		cache: QueryCache,
		options: QueryOptions[T],
		state: QueryState[T] | None = None,
		client: QueryClient | None = None,
	) -> None:
		super().__init__(cache.timers)
		self._cache = cache
		self._client = client
		self.query_key = options.query_key
		self.query_hash = options.query_hash
		self.observers = []
		self._initial_state = state if state is not None else get_default_state(options)
		self.state = self._initial_state
		self._revert_state = None
		self._retryer = None
		self._task = None
		self._abort_signal_consumed = False
		self.set_options(options)
		self.schedule_gc()

	@property
	def meta(self) -> Mapping[str, Any] | None:
		return self.options.meta

	@property
	def promise(self) -> asyncio.Task[T] | None:
		"""The running fetch, if any."""
		return self._task

	@property
	def focus_manager(self) -> FocusManager:
		return self._client.focus_manager if self._client else default_focus_manager

	@property
	def online_manager(self) -> OnlineManager:
		return self._client.online_manager if self._client else default_online_manager

	def set_options(self, options: QueryOptions[T]) -> None:
		self.options = options
		self.update_gc_time(options.gc_time)
		# Initial data supplied after creation still seeds an empty query.
		if self.state.data is None:
			default_state = get_default_state(options)
			if default_state.data is not None:
				self.set_data(
					default_state.data, updated_at=default_state.data_updated_at, manual=True
				)
				self._initial_state = default_state

	# -----------------
	# State updates
	# -----------------

	def set_data(
		self, new_data: T, *, updated_at: float | None = None, manual: bool = False
	) -> T:
		data = replace_data(self.state.data, new_data, self.options)
		self._dispatch(SuccessAction(data=data, data_updated_at=updated_at, manual=manual))
		return data

	def set_state(self, state: QueryState[T]) -> None:
		self._dispatch(SetStateAction(state=state))

	def invalidate(self) -> None:
		if not self.state.is_invalidated:
			self._dispatch(InvalidateAction())

	def reset(self) -> None:
		self.dispose()
		self.set_state(self._initial_state)

	def cancel(self, *, revert: bool = True, silent: bool = False) -> None:
		if self._retryer is not None:
			self._retryer.cancel(revert=revert, silent=silent)

	@override
	def dispose(self) -> None:
		self.cancel_gc()
		self.cancel(silent=True)

	# -----------------
	# Predicates
	# -----------------

	def is_active(self) -> bool:
		return any(
			resolve_enabled(observer.options.enabled, self) for observer in self.observers
		)

	def is_disabled(self) -> bool:
		if self.observers:
			return not self.is_active()
		return self.state.data_update_count + self.state.error_update_count == 0

	def is_static(self) -> bool:
		return any(
			resolve_stale_time(observer.options.stale_time, self) == STATIC
			for observer in self.observers
		)

	def is_stale(self) -> bool:
		if self.observers:
			return any(
				observer.get_current_result().is_stale for observer in self.observers
			)
		return self.state.data is None or self.state.is_invalidated

	def is_stale_by_time(self, stale_time: float | str = 0.0) -> bool:
		if self.state.data is None:
			return True
		if stale_time == STATIC:
			return False
		if self.state.is_invalidated:
			return True
		return time_until_stale(self.state.data_updated_at, cast(float, stale_time)) == 0

	# -----------------
	# Revalidation triggers
	# -----------------

	def on_focus(self) -> None:
		observer = next(
			(o for o in self.observers if o.should_fetch_on_window_focus()), None
		)
		if observer is not None:
			observer.refetch(cancel_refetch=False)
		if self._retryer is not None:
			self._retryer.continue_()

	def on_online(self) -> None:
		observer = next(
			(o for o in self.observers if o.should_fetch_on_reconnect()), None
		)
		if observer is not None:
			observer.refetch(cancel_refetch=False)
		if self._retryer is not None:
			self._retryer.continue_()

	# -----------------
	# Observers
	# -----------------

	def add_observer(self, observer: QueryObserver[T]) -> None:
		if observer in self.observers:
			return
		self.observers.append(observer)
		self.cancel_gc()
		self._cache.notify(
			QueryCacheNotifyEvent("observerAdded", self, observer=observer)
		)

	def remove_observer(self, observer: QueryObserver[T]) -> None:
		if observer not in self.observers:
			return
		self.observers.remove(observer)
		if not self.observers:
			if self._retryer is not None:
				if self._abort_signal_consumed:
					self._retryer.cancel(revert=True)
				else:
					self._retryer.cancel_retry()
			self.schedule_gc()
		self._cache.notify(
			QueryCacheNotifyEvent("observerRemoved", self, observer=observer)
		)

	def get_observers_count(self) -> int:
		return len(self.observers)

	@override
	def optional_remove(self) -> None:
		if not self.observers and self.state.fetch_status == "idle":
			logger.debug("Garbage collecting query %s", self.query_hash)
			self._cache.remove(self)

	# -----------------
	# Fetching
	# -----------------

	def fetch(
		self,
		options: QueryOptions[T] | None = None,
		fetch_options: FetchOptions | None = None,
	) -> asyncio.Task[T]:
		if self.state.fetch_status != "idle":
			if (
				self.state.data is not None
				and fetch_options is not None
				and fetch_options.cancel_refetch
			):
				# Silently cancel: the running task will follow the new one.
				self.cancel(silent=True)
			elif self._task is not None and self._retryer is not None:
				self._retryer.continue_retry()
				return self._task

		if options is not None:
			self.set_options(options)

		# Borrow a query_fn from an observer when the query was built without one.
		if self.options.query_fn is None:
			observer = next((o for o in self.observers if o.options.query_fn), None)
			if observer is not None:
				self.set_options(observer.options)

		meta = fetch_options.meta if fetch_options is not None else None
		signal = asyncio.Event()

		def mark_consumed() -> None:
			self._abort_signal_consumed = True

		def fetch_fn() -> Any:
			query_fn = self.options.query_fn
			if query_fn is None:
				raise MissingQueryFnError(self.query_hash)
			context = QueryFunctionContext(
				self._client, self.query_key, self.meta, signal, mark_consumed
			)
			self._abort_signal_consumed = False
			return call_flexible(query_fn, context)

		self._revert_state = self.state
		if self.state.fetch_status == "idle" or self.state.fetch_meta != meta:
			self._dispatch(FetchAction(meta=meta))

		def on_cancel(error: QueryCancelledError) -> None:
			signal.set()
			if not error.silent and self._retryer is retryer:
				self._dispatch(ErrorAction(error=error))

		retryer: Retryer[T] = Retryer(
			fetch_fn,
			retry=self.options.retry,
			retry_delay=self.options.retry_delay,
			network_mode=self.options.network_mode,
			on_fail=lambda count, error: self._dispatch(
				FailedAction(failure_count=count, error=error)
			),
			on_pause=lambda: self._dispatch(PauseAction()),
			on_continue=lambda: self._dispatch(ContinueAction()),
			on_cancel=on_cancel,
			focus_manager=self.focus_manager,
			online_manager=self.online_manager,
			tasks=self._cache.tasks,
		)
		self._retryer = retryer
		logger.debug("Fetching query %s", self.query_hash)
		retryer.start()

		task = self._cache.tasks.create(
			self._run_fetch(retryer), name=f"query.fetch({self.query_hash})"
		)
		task.add_done_callback(retrieve_exception)
		self._task = task
		return task

	async def _run_fetch(self, retryer: Retryer[T]) -> T:
		try:
			try:
				data = await retryer.future
			except asyncio.CancelledError:
				retryer.cancel(revert=True)
				raise
			except QueryCancelledError as error:
				if error.silent:
					successor = self._task
					if successor is not None and successor is not asyncio.current_task():
						return await successor
					raise
				# State was already restored when the retryer was cancelled.
				if self.state.data is None:
					raise
				return self.state.data
			except Exception as error:
				self._settle_error(retryer, error)
				raise

			if data is None:
				error = NoDataError(self.query_hash)
				self._settle_error(retryer, error)
				raise error

			data = self.set_data(data)
			self._cache.call_hook("on_success", data, self)
			self._cache.call_hook("on_settled", data, self.state.error, self)
			return data
		finally:
			if self._retryer is retryer:
				self._task = None
			self.schedule_gc()

	def _settle_error(self, retryer: Retryer[T], error: Exception) -> None:
		if self._retryer is retryer:
			self._dispatch(ErrorAction(error=error))
		self._cache.call_hook("on_error", error, self)
		self._cache.call_hook("on_settled", self.state.data, error, self)

	# -----------------
	# Reducer
	# -----------------

	def _reduce(self, state: QueryState[T], action: Action) -> QueryState[T]:
		match action:
			case FailedAction(failure_count=count, error=error):
				return state.replace(fetch_failure_count=count, fetch_failure_reason=error)
			case PauseAction():
				return state.replace(fetch_status="paused")
			case ContinueAction():
				return state.replace(fetch_status="fetching")
			case FetchAction(meta=meta):
				changes: dict[str, Any] = {
					"fetch_failure_count": 0,
					"fetch_failure_reason": None,
					"fetch_status": "fetching"
					if can_fetch(self.options.network_mode, self.online_manager)
					else "paused",
					"fetch_meta": meta,
				}
				if state.data is None:
					changes.update(error=None, status="pending")
				return state.replace(**changes)
			case SuccessAction(data=data, data_updated_at=updated_at, manual=manual):
				changes = {
					"data": data,
					"data_update_count": state.data_update_count + 1,
					"data_updated_at": updated_at if updated_at is not None else now(),
					"error": None,
					"is_invalidated": False,
					"status": "success",
				}
				if not manual:
					changes.update(
						fetch_status="idle", fetch_failure_count=0, fetch_failure_reason=None
					)
				new_state = state.replace(**changes)
				self._revert_state = new_state if manual else None
				return new_state
			case ErrorAction(error=error):
				if is_cancelled_error(error):
					cancelled = cast(QueryCancelledError, error)
					if cancelled.revert and self._revert_state is not None:
						return self._revert_state.replace(fetch_status="idle")
					return state.replace(fetch_status="idle")
				return state.replace(
					error=error,
					error_update_count=state.error_update_count + 1,
					error_updated_at=now(),
					fetch_failure_count=state.fetch_failure_count + 1,
					fetch_failure_reason=error,
					fetch_status="idle",
					status="error",
				)
			case InvalidateAction():
				return state.replace(is_invalidated=True)
			case SetStateAction(state=new_state):
				return new_state
		return state

	def _dispatch(self, action: Action) -> None:
		self.state = self._reduce(self.state, action)
		with notify_manager.batching():
			for observer in list(self.observers):
				observer.on_query_update()
			self._cache.notify(QueryCacheNotifyEvent("queryUpdated", self, action=action))

	@override
	def __repr__(self) -> str:
		return f"Query({self.query_hash}, status={self.state.status}, fetch_status={self.state.fetch_status})"
