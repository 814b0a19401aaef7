from __future__ import annotations

import math
import time
from collections.abc import Callable, Hashable, Sequence
from typing import TYPE_CHECKING, Any, Literal, TypeAlias, TypeVar

from query_core.errors import ConfigurationError
from query_core.helpers import call_flexible

if TYPE_CHECKING:
	from query_core.query import Query

T = TypeVar("T")

QueryKey: TypeAlias = Sequence[Hashable | Any]
QueryStatus: TypeAlias = Literal["pending", "success", "error"]
FetchStatus: TypeAlias = Literal["idle", "fetching", "paused"]
NetworkMode: TypeAlias = Literal["online", "always", "offlineFirst"]

StaticStaleTime: TypeAlias = Literal["static"]
StaleTimeValue: TypeAlias = float | StaticStaleTime
StaleTime: TypeAlias = StaleTimeValue | Callable[..., StaleTimeValue]
Enabled: TypeAlias = bool | Callable[..., bool]
RefetchOnValue: TypeAlias = bool | Literal["always"]
RefetchOn: TypeAlias = RefetchOnValue | Callable[..., RefetchOnValue]

STATIC: StaticStaleTime = "static"

# Seconds an unobserved query survives in the cache.
DEFAULT_GC_TIME = 300.0


def now() -> float:
	return time.time()


def is_valid_timeout(value: Any) -> bool:
	if isinstance(value, bool) or not isinstance(value, (int, float)):
		return False
	return value >= 0 and not math.isinf(value)


def time_until_stale(updated_at: float, stale_time: float = 0.0) -> float:
	return max(updated_at + (stale_time or 0.0) - now(), 0.0)


def resolve_stale_time(stale_time: StaleTime | None, query: Query[Any]) -> StaleTimeValue:
	if callable(stale_time):
		return call_flexible(stale_time, query)
	return 0.0 if stale_time is None else stale_time


def resolve_enabled(enabled: Enabled, query: Query[Any] | None) -> bool:
	"""Resolve `enabled` to a strict bool.

	Anything other than a bool (or a callable returning one) is a
	configuration error rather than being coerced.
	"""
	value = call_flexible(enabled, query) if callable(enabled) else enabled
	if not isinstance(value, bool):
		raise ConfigurationError(
			"Expected enabled to be a boolean or a callback that returns a boolean"
		)
	return value


def resolve_refetch_on(value: RefetchOn, query: Query[Any]) -> RefetchOnValue:
	if callable(value):
		return call_flexible(value, query)
	return value
