from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from query_core.helpers import call_flexible

if TYPE_CHECKING:
	from query_core.query import Query

logger = logging.getLogger(__name__)


class QueryError(Exception):
	"""Base class for errors raised by query_core itself."""


class QueryCancelledError(QueryError):
	"""Raised into a fetch that was cancelled.

	Cancellation is not a failure: a cancelled fetch never becomes the query's
	`error`. `revert` restores the state from before the fetch started, `silent`
	leaves the state untouched because another fetch is taking over.
	"""

	revert: bool
	silent: bool

	def __init__(self, *, revert: bool = True, silent: bool = False) -> None:
		super().__init__("Query was cancelled")
		self.revert = revert
		self.silent = silent


class ConfigurationError(QueryError, TypeError):
	"""Invalid option shape, raised synchronously at construction or update."""


class MissingQueryFnError(QueryError):
	def __init__(self, query_hash: str) -> None:
		super().__init__(f"Missing query_fn: '{query_hash}'")
		self.query_hash = query_hash


class NoDataError(QueryError):
	def __init__(self, query_hash: str) -> None:
		super().__init__(
			f"Query data cannot be None. Affected query key: {query_hash}"
		)
		self.query_hash = query_hash


def is_cancelled_error(value: Any) -> bool:
	return isinstance(value, QueryCancelledError)


def should_throw_error(
	throw_on_error: bool | Callable[..., bool] | None,
	error: BaseException | None,
	query: Query[Any] | None,
) -> bool:
	if callable(throw_on_error):
		return bool(call_flexible(throw_on_error, error, query))
	return bool(throw_on_error)


def report_callback_error(exc: BaseException, *, callback: Any, where: str) -> None:
	logger.exception(
		"Unhandled exception in %s callback %r", where, callback, exc_info=exc
	)


__all__ = [
	"ConfigurationError",
	"MissingQueryFnError",
	"NoDataError",
	"QueryCancelledError",
	"QueryError",
	"is_cancelled_error",
	"report_callback_error",
	"should_throw_error",
]
