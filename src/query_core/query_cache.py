from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar, Unpack, override

from query_core.errors import report_callback_error
from query_core.events import QueryCacheNotifyEvent
from query_core.hashing import QueryFilters, match_query
from query_core.helpers import Disposable
from query_core.notify_manager import notify_manager
from query_core.options import QueryOptions
from query_core.query import Query, QueryState
from query_core.scheduling import TaskRegistry, TimerRegistry
from query_core.subscribable import Subscribable

if TYPE_CHECKING:
	from query_core.query_client import QueryClient

T = TypeVar("T")

logger = logging.getLogger(__name__)

QueryCacheListener = Callable[[QueryCacheNotifyEvent], None]
OnSuccessHook = Callable[[Any, Query[Any]], Any]
OnErrorHook = Callable[[Exception, Query[Any]], Any]
OnSettledHook = Callable[[Any, Exception | None, Query[Any]], Any]


class QueryCache(Subscribable[QueryCacheListener], Disposable):
	"""
	Maps query hashes to `Query` instances.

	Subscribers receive a `QueryCacheNotifyEvent` for every change in the
	cache: queries being added, updated or removed, and observers attaching,
	detaching or changing options.
	"""

	tasks: TaskRegistry
	timers: TimerRegistry
	_queries: dict[str, Query[Any]]
	_hooks: dict[str, Callable[..., Any] | None]

	def __init__(
		self,
		*,
		on_success: OnSuccessHook | None = None,
		on_error: OnErrorHook | None = None,
		on_settled: OnSettledHook | None = None,
	) -> None:
		super().__init__()
		self._queries = {}
		self.tasks = TaskRegistry(name="query_cache")
		self.timers = TimerRegistry(name="query_cache")
		self._hooks = {
			"on_success": on_success,
			"on_error": on_error,
			"on_settled": on_settled,
		}

	def build(
		self,
		client: QueryClient | None,
		options: QueryOptions[T],
		state: QueryState[T] | None = None,
	) -> Query[T]:
		query = self._queries.get(options.query_hash)
		if query is None:
			query = Query(cache=self, options=options, state=state, client=client)
			self.add(query)
		return query

	def add(self, query: Query[Any]) -> None:
		if query.query_hash in self._queries:
			return
		self._queries[query.query_hash] = query
		self.notify(QueryCacheNotifyEvent("queryAdded", query))

	def remove(self, query: Query[Any]) -> None:
		existing = self._queries.get(query.query_hash)
		if existing is None:
			return
		query.dispose()
		if existing is query:
			del self._queries[query.query_hash]
		logger.debug("Removed query %s", query.query_hash)
		self.notify(QueryCacheNotifyEvent("queryRemoved", query))

	def clear(self) -> None:
		with notify_manager.batching():
			for query in self.get_all():
				self.remove(query)

	def get(self, query_hash: str) -> Query[Any] | None:
		return self._queries.get(query_hash)

	def get_all(self) -> list[Query[Any]]:
		return list(self._queries.values())

	def find(self, **filters: Unpack[QueryFilters]) -> Query[Any] | None:
		filters.setdefault("exact", True)
		return next((q for q in self._queries.values() if match_query(q, filters)), None)

	def find_all(self, **filters: Unpack[QueryFilters]) -> list[Query[Any]]:
		queries = self.get_all()
		if not filters:
			return queries
		return [q for q in queries if match_query(q, filters)]

	def notify(self, event: QueryCacheNotifyEvent) -> None:
		with notify_manager.batching():
			for listener in self.iter_listeners():
				notify_manager.schedule(lambda listener=listener: listener(event))

	def on_focus(self) -> None:
		with notify_manager.batching():
			for query in self.get_all():
				query.on_focus()

	def on_online(self) -> None:
		with notify_manager.batching():
			for query in self.get_all():
				query.on_online()

	def call_hook(self, name: str, *args: Any) -> None:
		hook = self._hooks.get(name)
		if hook is None:
			return
		try:
			hook(*args)
		except Exception as exc:
			report_callback_error(exc, callback=hook, where=f"QueryCache.{name}")

	@override
	def dispose(self) -> None:
		"""Stop every fetch and timer owned by the cache."""
		self.clear()
		self.timers.cancel_all()
		self.tasks.cancel_all()

	def __len__(self) -> int:
		return len(self._queries)
