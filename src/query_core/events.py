from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

if TYPE_CHECKING:
	from query_core.query import Action, Query
	from query_core.query_observer import QueryObserver

QueryCacheEventType: TypeAlias = Literal[
	"queryAdded",
	"queryRemoved",
	"queryUpdated",
	"observerAdded",
	"observerRemoved",
	"observerResultsUpdated",
	"observerOptionsUpdated",
]


@dataclass(frozen=True, slots=True)
class QueryCacheNotifyEvent:
	type: QueryCacheEventType
	query: Query[Any]
	action: Action | None = None
	observer: QueryObserver[Any] | None = None
