import logging
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

NotifyCallback = Callable[[], None]
NotifyFunction = Callable[[NotifyCallback], None]
BatchNotifyFunction = Callable[[Callable[[], None]], None]
ScheduleFunction = Callable[[Callable[[], None]], None]

logger = logging.getLogger(__name__)


def _call(callback: Callable[[], None]) -> None:
	callback()


class NotifyManager:
	"""
	Defers notifications issued inside a batch until the outermost batch exits,
	then delivers them in the order they were issued.

	Notifications issued while a flush is running are appended to the same
	queue, so a listener that triggers another transition never sees its
	follow-up delivered ahead of notifications that were already pending.
	"""

	_queue: deque[NotifyCallback]
	_transactions: int
	_flushing: bool
	_notify_fn: NotifyFunction
	_batch_notify_fn: BatchNotifyFunction
	_schedule_fn: ScheduleFunction

	def __init__(self) -> None:
		self._queue = deque()
		self._transactions = 0
		self._flushing = False
		self._notify_fn = _call
		self._batch_notify_fn = _call
		self._schedule_fn = _call

	@property
	def is_batching(self) -> bool:
		return self._transactions > 0

	def batch(self, callback: Callable[[], R]) -> R:
		with self.batching():
			return callback()

	@contextmanager
	def batching(self) -> Iterator[None]:
		self._transactions += 1
		try:
			yield
		finally:
			self._transactions -= 1
			if self._transactions == 0:
				self.flush()

	def schedule(self, callback: NotifyCallback) -> None:
		self._queue.append(callback)
		if self._transactions == 0:
			self.flush()

	def batch_calls(self, callback: Callable[P, Any]) -> Callable[P, None]:
		"""Wrap `callback` so every call goes through `schedule`."""

		def wrapper(*args: P.args, **kwargs: P.kwargs) -> None:
			self.schedule(lambda: callback(*args, **kwargs))

		return wrapper

	def flush(self) -> None:
		if self._flushing or not self._queue:
			return
		self._schedule_fn(lambda: self._batch_notify_fn(self._drain))

	def _drain(self) -> None:
		if self._flushing:
			return
		self._flushing = True
		try:
			while self._queue:
				callback = self._queue.popleft()
				try:
					self._notify_fn(callback)
				except Exception:
					logger.exception("Unhandled exception in notification callback")
		finally:
			self._flushing = False

	def set_notify_function(self, fn: NotifyFunction) -> None:
		"""Wrap every single notification, e.g. to run it inside an adapter's own batch."""
		self._notify_fn = fn

	def set_batch_notify_function(self, fn: BatchNotifyFunction) -> None:
		"""Wrap every flush."""
		self._batch_notify_fn = fn

	def set_scheduler(self, fn: ScheduleFunction) -> None:
		"""Change when a flush runs. The default runs it synchronously."""
		self._schedule_fn = fn


notify_manager = NotifyManager()
