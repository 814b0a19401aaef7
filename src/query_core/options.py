from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar

from query_core.common import (
	Enabled,
	NetworkMode,
	QueryKey,
	RefetchOn,
	StaleTime,
)
from query_core.errors import ConfigurationError
from query_core.retryer import RetryDelayValue, RetryValue

if TYPE_CHECKING:
	from query_core.query import Query, QueryFunctionContext

T = TypeVar("T")

QueryFn = Callable[["QueryFunctionContext"], Any]
NotifyOnChangeProps = Literal["all"] | list[str] | Callable[[], Literal["all"] | list[str]]
RefetchInterval = float | Literal[False] | Callable[["Query[Any]"], float | Literal[False]]


@dataclass(frozen=True, slots=True)
class QueryOptions(Generic[T]):
	"""Fully resolved options for one query or observer.

	Built from keyword arguments by `QueryClient.default_query_options`;
	callers never construct it directly.
	"""

	query_key: QueryKey
	query_hash: str
	query_fn: QueryFn | None = None
	query_key_hash_fn: Callable[[QueryKey], str] | None = None
	enabled: Enabled = True
	stale_time: StaleTime = 0.0
	gc_time: float | None = None
	retry: RetryValue = 3
	retry_delay: RetryDelayValue | None = None
	retry_on_mount: bool = True
	network_mode: NetworkMode = "online"
	initial_data: T | Callable[[], T | None] | None = None
	initial_data_updated_at: float | Callable[[], float | None] | None = None
	placeholder_data: Any = None
	select: Callable[[Any], Any] | None = None
	structural_sharing: bool | Callable[[Any, Any], Any] = True
	refetch_on_mount: RefetchOn = True
	refetch_on_window_focus: RefetchOn = True
	refetch_on_reconnect: RefetchOn = True
	refetch_interval: RefetchInterval = False
	refetch_interval_in_background: bool = False
	notify_on_change_props: NotifyOnChangeProps | None = None
	throw_on_error: bool | Callable[..., bool] = False
	meta: Mapping[str, Any] | None = None

	def replace(self, **changes: Any) -> QueryOptions[T]:
		return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class FetchOptions:
	cancel_refetch: bool = False
	meta: Mapping[str, Any] | None = None


OPTION_NAMES = frozenset(f.name for f in dataclasses.fields(QueryOptions))


def check_option_names(options: Mapping[str, Any]) -> None:
	unknown = sorted(set(options) - OPTION_NAMES)
	if unknown:
		raise ConfigurationError(f"Unknown query option(s): {', '.join(unknown)}")


def validate_enabled(enabled: Any) -> None:
	if not isinstance(enabled, bool) and not callable(enabled):
		raise ConfigurationError(
			"Expected enabled to be a boolean or a callback that returns a boolean"
		)
