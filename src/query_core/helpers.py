import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, cast

T = TypeVar("T")


class Sentinel:
	def __init__(self, name: str) -> None:
		self.name = name

	def __repr__(self) -> str:
		return self.name


MISSING: Any = Sentinel("MISSING")


class Disposable(ABC):
	@abstractmethod
	def dispose(self) -> None: ...


def _positional_capacity(fn: Callable[..., Any]) -> int | None:
	try:
		sig = inspect.signature(fn)
	except (TypeError, ValueError):
		return None
	count = 0
	for param in sig.parameters.values():
		if param.kind is inspect.Parameter.VAR_POSITIONAL:
			return None
		if param.kind in (
			inspect.Parameter.POSITIONAL_ONLY,
			inspect.Parameter.POSITIONAL_OR_KEYWORD,
		):
			count += 1
	return count


def call_flexible(fn: Callable[..., T], *args: Any) -> T:
	"""Call `fn` with as many leading positional args as it accepts."""
	capacity = _positional_capacity(fn)
	if capacity is None:
		return fn(*args)
	return fn(*args[:capacity])


async def maybe_await(value: T | Awaitable[T]) -> T:
	if inspect.isawaitable(value):
		return await cast(Awaitable[T], value)
	return value


def functional_update(updater: T | Callable[[T | None], T], prev: T | None) -> T:
	if callable(updater):
		return cast(Callable[[T | None], T], updater)(prev)
	return updater
