from .common import DEFAULT_GC_TIME, STATIC, FetchStatus, QueryKey, QueryStatus
from .errors import (
	ConfigurationError,
	MissingQueryFnError,
	NoDataError,
	QueryCancelledError,
	QueryError,
	is_cancelled_error,
)
from .events import QueryCacheNotifyEvent
from .focus_manager import FocusManager, focus_manager
from .hashing import QueryFilters, hash_key, match_query, partial_match_key
from .notify_manager import NotifyManager, notify_manager
from .online_manager import OnlineManager, online_manager
from .options import FetchOptions, QueryOptions
from .query import Query, QueryFunctionContext, QueryState
from .query_cache import QueryCache
from .query_client import QueryClient
from .query_observer import QueryObserver, QueryObserverResult, TrackedResult
from .retryer import Retryer, default_retry_delay
from .sharing import replace_equal_deep
from .subscribable import Subscribable

__all__ = [
	"ConfigurationError",
	"DEFAULT_GC_TIME",
	"FetchOptions",
	"FetchStatus",
	"FocusManager",
	"MissingQueryFnError",
	"NoDataError",
	"NotifyManager",
	"OnlineManager",
	"Query",
	"QueryCache",
	"QueryCacheNotifyEvent",
	"QueryCancelledError",
	"QueryClient",
	"QueryError",
	"QueryFilters",
	"QueryFunctionContext",
	"QueryKey",
	"QueryObserver",
	"QueryObserverResult",
	"QueryOptions",
	"QueryState",
	"QueryStatus",
	"Retryer",
	"STATIC",
	"Subscribable",
	"TrackedResult",
	"default_retry_delay",
	"focus_manager",
	"hash_key",
	"is_cancelled_error",
	"match_query",
	"notify_manager",
	"online_manager",
	"partial_match_key",
	"replace_equal_deep",
]
