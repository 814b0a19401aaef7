from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, Literal, TypeVar, Unpack

from query_core.common import QueryKey, resolve_stale_time
from query_core.errors import is_cancelled_error
from query_core.focus_manager import FocusManager, focus_manager as default_focus_manager
from query_core.hashing import (
	QueryFilters,
	hash_key,
	partial_match_key,
)
from query_core.helpers import functional_update
from query_core.notify_manager import notify_manager
from query_core.online_manager import (
	OnlineManager,
	online_manager as default_online_manager,
)
from query_core.options import FetchOptions, QueryOptions, check_option_names
from query_core.query import QueryState
from query_core.query_cache import QueryCache
from query_core.scheduling import retrieve_exception

T = TypeVar("T")

logger = logging.getLogger(__name__)

RefetchType = Literal["active", "inactive", "all", "none"]


class QueryClient:
	"""
	Entry point for imperative cache access.

	Options are keyword arguments, merged in this order: client defaults,
	then defaults registered with `set_query_defaults` for every key prefix
	matching the query key, then the call's own keywords.
	"""

	focus_manager: FocusManager
	online_manager: OnlineManager

	_query_cache: QueryCache
	_default_options: dict[str, Any]
	_query_defaults: list[tuple[QueryKey, dict[str, Any]]]
	_mount_count: int
	_unsubscribe_focus: Callable[[], None] | None
	_unsubscribe_online: Callable[[], None] | None

	def __init__(
		self,
		query_cache: QueryCache | None = None,
		default_options: Mapping[str, Any] | None = None,
		focus_manager: FocusManager | None = None,
		online_manager: OnlineManager | None = None,
	) -> None:
		self._query_cache = query_cache if query_cache is not None else QueryCache()
		self._default_options = dict(default_options or {})
		check_option_names(self._default_options)
		self._query_defaults = []
		self.focus_manager = focus_manager or default_focus_manager
		self.online_manager = online_manager or default_online_manager
		self._mount_count = 0
		self._unsubscribe_focus = None
		self._unsubscribe_online = None

	# -----------------
	# Lifecycle
	# -----------------

	def mount(self) -> None:
		self._mount_count += 1
		if self._mount_count != 1:
			return

		def on_focus(focused: bool) -> None:
			if focused:
				self._query_cache.on_focus()

		def on_online(online: bool) -> None:
			if online:
				self._query_cache.on_online()

		self._unsubscribe_focus = self.focus_manager.subscribe(on_focus)
		self._unsubscribe_online = self.online_manager.subscribe(on_online)

	def unmount(self) -> None:
		self._mount_count -= 1
		if self._mount_count != 0:
			return
		if self._unsubscribe_focus is not None:
			self._unsubscribe_focus()
			self._unsubscribe_focus = None
		if self._unsubscribe_online is not None:
			self._unsubscribe_online()
			self._unsubscribe_online = None

	def get_query_cache(self) -> QueryCache:
		return self._query_cache

	# -----------------
	# Reads
	# -----------------

	def is_fetching(self, **filters: Unpack[QueryFilters]) -> int:
		filters = {**filters, "fetch_status": "fetching"}
		return len(self._query_cache.find_all(**filters))

	def get_query_data(self, query_key: QueryKey) -> Any:
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options.query_hash)
		return query.state.data if query is not None else None

	def get_queries_data(
		self, **filters: Unpack[QueryFilters]
	) -> list[tuple[QueryKey, Any]]:
		return [
			(query.query_key, query.state.data)
			for query in self._query_cache.find_all(**filters)
		]

	def get_query_state(self, query_key: QueryKey) -> QueryState[Any] | None:
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options.query_hash)
		return query.state if query is not None else None

	# -----------------
	# Writes
	# -----------------

	def set_query_data(
		self,
		query_key: QueryKey,
		updater: Any,
		*,
		updated_at: float | None = None,
	) -> Any:
		"""Write data for `query_key`. `updater` is a value or a function of the
		previous data; a `None` result leaves the cache untouched."""
		options = self.default_query_options({"query_key": query_key})
		query = self._query_cache.get(options.query_hash)
		prev = query.state.data if query is not None else None
		data = functional_update(updater, prev)
		if data is None:
			return None
		return self._query_cache.build(self, options).set_data(
			data, updated_at=updated_at, manual=True
		)

	def set_queries_data(
		self,
		updater: Any,
		*,
		updated_at: float | None = None,
		**filters: Unpack[QueryFilters],
	) -> list[tuple[QueryKey, Any]]:
		with notify_manager.batching():
			return [
				(
					query.query_key,
					self.set_query_data(query.query_key, updater, updated_at=updated_at),
				)
				for query in self._query_cache.find_all(**filters)
			]

	# -----------------
	# Fetching
	# -----------------

	def fetch_query(self, **options: Any) -> asyncio.Task[Any]:
		"""Return cached data when fresh, otherwise fetch. Raises on failure."""
		# Imperative fetches do not retry unless some option source asks for it.
		query_key = options.get("query_key")
		if query_key is not None and "retry" not in {
			**self._default_options,
			**self.get_query_defaults(query_key),
			**options,
		}:
			options["retry"] = False
		defaulted = self.default_query_options(options)
		query = self._query_cache.build(self, defaulted)
		if query.is_stale_by_time(resolve_stale_time(defaulted.stale_time, query)):
			return query.fetch(defaulted)
		return self._resolved(query.state.data)

	def prefetch_query(self, **options: Any) -> asyncio.Task[None]:
		fetch = self.fetch_query(**options)

		async def run() -> None:
			try:
				await fetch
			except Exception:
				logger.debug("prefetch_query failed", exc_info=True)

		return self._track(run())

	def ensure_query_data(
		self, *, revalidate_if_stale: bool = False, **options: Any
	) -> asyncio.Task[Any]:
		"""Return cached data if any, fetching only when the cache is empty."""
		defaulted = self.default_query_options(options)
		query = self._query_cache.build(self, defaulted)
		cached = query.state.data
		if cached is None:
			return self.fetch_query(**options)
		if revalidate_if_stale and query.is_stale_by_time(
			resolve_stale_time(defaulted.stale_time, query)
		):
			self.prefetch_query(**options)
		return self._resolved(cached)

	# -----------------
	# Invalidation
	# -----------------

	def invalidate_queries(
		self,
		*,
		refetch_type: RefetchType = "active",
		throw_on_error: bool = False,
		cancel_refetch: bool = True,
		**filters: Unpack[QueryFilters],
	) -> asyncio.Task[None]:
		with notify_manager.batching():
			for query in self._query_cache.find_all(**filters):
				query.invalidate()
			if refetch_type == "none":
				return self._resolved(None)
			refetch_filters: dict[str, Any] = {**filters, "type": refetch_type}
			if refetch_type == "all":
				refetch_filters.pop("type")
			return self.refetch_queries(
				throw_on_error=throw_on_error,
				cancel_refetch=cancel_refetch,
				**refetch_filters,
			)

	def refetch_queries(
		self,
		*,
		throw_on_error: bool = False,
		cancel_refetch: bool = True,
		**filters: Unpack[QueryFilters],
	) -> asyncio.Task[None]:
		fetch_options = FetchOptions(cancel_refetch=cancel_refetch)
		fetches: list[asyncio.Task[Any]] = []
		with notify_manager.batching():
			for query in self._query_cache.find_all(**filters):
				if query.is_disabled() or query.is_static():
					continue
				fetch = query.fetch(None, fetch_options)
				# A paused fetch may never settle; do not wait on it.
				if query.state.fetch_status != "paused":
					fetches.append(fetch)

		async def run() -> None:
			results = await asyncio.gather(*fetches, return_exceptions=True)
			if throw_on_error:
				for result in results:
					if isinstance(result, Exception) and not is_cancelled_error(result):
						raise result

		return self._track(run())

	def cancel_queries(
		self, *, revert: bool = True, **filters: Unpack[QueryFilters]
	) -> asyncio.Task[None]:
		queries = self._query_cache.find_all(**filters)
		pending = [q.promise for q in queries if q.promise is not None]
		with notify_manager.batching():
			for query in queries:
				query.cancel(revert=revert)

		async def run() -> None:
			await asyncio.gather(*pending, return_exceptions=True)

		return self._track(run())

	def remove_queries(self, **filters: Unpack[QueryFilters]) -> None:
		with notify_manager.batching():
			for query in self._query_cache.find_all(**filters):
				self._query_cache.remove(query)

	def reset_queries(self, **filters: Unpack[QueryFilters]) -> asyncio.Task[None]:
		with notify_manager.batching():
			for query in self._query_cache.find_all(**filters):
				query.reset()
			return self.refetch_queries(**{**filters, "type": "active"})

	def clear(self) -> None:
		self._query_cache.clear()

	# -----------------
	# Defaults
	# -----------------

	def get_default_options(self) -> dict[str, Any]:
		return dict(self._default_options)

	def set_default_options(self, options: Mapping[str, Any]) -> None:
		check_option_names(options)
		self._default_options = dict(options)

	def set_query_defaults(self, query_key: QueryKey, options: Mapping[str, Any]) -> None:
		check_option_names(options)
		key_hash = hash_key(query_key)
		for index, (key, _) in enumerate(self._query_defaults):
			if hash_key(key) == key_hash:
				self._query_defaults[index] = (query_key, dict(options))
				return
		self._query_defaults.append((query_key, dict(options)))

	def get_query_defaults(self, query_key: QueryKey) -> dict[str, Any]:
		merged: dict[str, Any] = {}
		for key, options in self._query_defaults:
			if partial_match_key(query_key, key):
				merged.update(options)
		return merged

	def default_query_options(
		self, options: Mapping[str, Any] | QueryOptions[T]
	) -> QueryOptions[T]:
		if isinstance(options, QueryOptions):
			return options
		check_option_names(options)
		query_key = options.get("query_key")
		if query_key is None:
			raise TypeError("query_key is required")
		merged: dict[str, Any] = {
			**self._default_options,
			**self.get_query_defaults(query_key),
			**options,
		}
		if not merged.get("query_hash"):
			hash_fn = merged.get("query_key_hash_fn") or hash_key
			merged["query_hash"] = hash_fn(query_key)
		return QueryOptions(**merged)

	# -----------------
	# Helpers
	# -----------------

	def _track(self, coroutine: Any) -> asyncio.Task[Any]:
		task = self._query_cache.tasks.create(coroutine, name="query_client")
		task.add_done_callback(retrieve_exception)
		return task

	def _resolved(self, value: T) -> asyncio.Task[T]:
		async def resolved() -> T:
			return value

		return self._track(resolved())

