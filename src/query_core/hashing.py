"""Query key canonicalization and filter matching."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal, TypedDict

from query_core.common import QueryKey

if TYPE_CHECKING:
	from query_core.options import QueryOptions
	from query_core.query import Query

QueryTypeFilter = Literal["all", "active", "inactive"]


class QueryFilters(TypedDict, total=False):
	query_key: QueryKey
	exact: bool
	type: QueryTypeFilter
	stale: bool
	fetch_status: str
	predicate: Callable[["Query[Any]"], bool]


def hash_key(query_key: QueryKey) -> str:
	"""Stable hash for a query key.

	Mapping keys are sorted, so keys that differ only in dict insertion order
	collide. Sequence order is significant, and tuples hash like lists.
	"""
	return json.dumps(
		list(query_key), sort_keys=True, separators=(",", ":"), ensure_ascii=False
	)


def hash_query_key_by_options(
	query_key: QueryKey, options: "QueryOptions[Any] | None" = None
) -> str:
	hash_fn = options.query_key_hash_fn if options is not None else None
	return (hash_fn or hash_key)(query_key)


def _is_sequence(value: Any) -> bool:
	return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def partial_match_key(a: Any, b: Any) -> bool:
	"""Whether `b` is a partial (prefix) match of `a`."""
	if a is b:
		return True
	if _is_sequence(a) and _is_sequence(b):
		if len(b) > len(a):
			return False
		return all(partial_match_key(a[i], b[i]) for i in range(len(b)))
	if isinstance(a, Mapping) and isinstance(b, Mapping):
		return all(key in a and partial_match_key(a[key], b[key]) for key in b)
	if type(a) is not type(b):
		return False
	return a == b


def match_query(query: "Query[Any]", filters: QueryFilters) -> bool:
	query_type = filters.get("type", "all")
	exact = filters.get("exact", False)
	query_key = filters.get("query_key")

	if query_key is not None:
		if exact:
			if query.query_hash != hash_query_key_by_options(query_key, query.options):
				return False
		elif not partial_match_key(query.query_key, query_key):
			return False

	if query_type != "all":
		is_active = query.is_active()
		if query_type == "active" and not is_active:
			return False
		if query_type == "inactive" and is_active:
			return False

	stale = filters.get("stale")
	if stale is not None and query.is_stale() != stale:
		return False

	fetch_status = filters.get("fetch_status")
	if fetch_status is not None and fetch_status != query.state.fetch_status:
		return False

	predicate = filters.get("predicate")
	if predicate is not None and not predicate(query):
		return False

	return True
