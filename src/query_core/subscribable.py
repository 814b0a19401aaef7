from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

TListener = TypeVar("TListener", bound=Callable[..., Any])


class Subscribable(Generic[TListener]):
	"""Ordered publish/subscribe base.

	Iteration runs over a snapshot taken when it starts. A listener removed
	mid-iteration is skipped if it has not run yet; one added mid-iteration
	waits for the next round. Subscribing the same callable twice yields two
	independent subscriptions.
	"""

	_listeners: dict[object, TListener]

	def __init__(self) -> None:
		self._listeners = {}

	def subscribe(self, listener: TListener) -> Callable[[], None]:
		token = object()
		self._listeners[token] = listener
		self.on_subscribe()

		def unsubscribe() -> None:
			if token in self._listeners:
				del self._listeners[token]
				self.on_unsubscribe()

		return unsubscribe

	def has_listeners(self) -> bool:
		return len(self._listeners) > 0

	def listener_count(self) -> int:
		return len(self._listeners)

	def iter_listeners(self) -> Iterator[TListener]:
		for token, listener in list(self._listeners.items()):
			if token in self._listeners:
				yield listener

	def on_subscribe(self) -> None:
		pass

	def on_unsubscribe(self) -> None:
		pass
