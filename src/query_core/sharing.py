"""Structural sharing.

`replace_equal_deep` walks two plain-data trees and hands back the previous
reference for every subtree that is deep-equal, so consumers can use identity
checks to skip work. Inputs must be acyclic plain data (dict, list, tuple and
scalars). Cost is linear in the size of the inputs.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar, cast

if TYPE_CHECKING:
	from query_core.options import QueryOptions

T = TypeVar("T")

_SCALARS = (str, bytes, int, float, complex, bool, type(None))


def same_value(a: Any, b: Any) -> bool:
	if a is b:
		return True
	return type(a) is type(b) and isinstance(a, _SCALARS) and a == b


def replace_equal_deep(prev: Any, next: T) -> T:
	if same_value(prev, next):
		return cast(T, prev)

	if type(prev) is dict and type(next) is dict:
		prev_dict = cast(dict[Any, Any], prev)
		next_dict = cast(dict[Any, Any], next)
		copy: dict[Any, Any] = {}
		equal_items = 0
		unchanged = True
		for key, value in next_dict.items():
			if key in prev_dict:
				copy[key] = replace_equal_deep(prev_dict[key], value)
				if copy[key] is prev_dict[key]:
					equal_items += 1
			else:
				copy[key] = value
			unchanged = unchanged and copy[key] is value
		if len(prev_dict) == len(next_dict) and equal_items == len(prev_dict):
			return cast(T, prev)
		# Nothing could be shared: keep the caller's object.
		return next if unchanged else cast(T, copy)

	if (type(prev) is list and type(next) is list) or (
		type(prev) is tuple and type(next) is tuple
	):
		prev_seq = cast(list[Any], prev)
		next_seq = cast(list[Any], next)
		items: list[Any] = []
		equal_items = 0
		unchanged = True
		for index, value in enumerate(next_seq):
			shared = value
			if index < len(prev_seq):
				shared = replace_equal_deep(prev_seq[index], value)
				if shared is prev_seq[index]:
					equal_items += 1
			items.append(shared)
			unchanged = unchanged and shared is value
		if len(prev_seq) == len(next_seq) and equal_items == len(prev_seq):
			return cast(T, prev)
		if unchanged:
			return next
		return cast(T, items if type(next) is list else tuple(items))

	return next


def replace_data(prev: Any, data: T, options: "QueryOptions[Any]") -> T:
	sharing = options.structural_sharing
	if callable(sharing):
		return cast(Callable[[Any, T], T], sharing)(prev, data)
	if sharing is not False:
		return replace_equal_deep(prev, data)
	return data


def shallow_equal_objects(a: Any, b: Any) -> bool:
	"""Field-wise identity comparison of two dataclass instances or dicts."""
	if a is None or b is None or type(a) is not type(b):
		return False
	if dataclasses.is_dataclass(a):
		return all(
			same_value(getattr(a, f.name), getattr(b, f.name))
			for f in dataclasses.fields(a)
		)
	if isinstance(a, dict):
		a_dict = cast(dict[Any, Any], a)
		b_dict = cast(dict[Any, Any], b)
		if a_dict.keys() != b_dict.keys():
			return False
		return all(same_value(a_dict[key], b_dict[key]) for key in a_dict)
	return same_value(a, b)
