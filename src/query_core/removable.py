from abc import ABC, abstractmethod

from query_core.common import DEFAULT_GC_TIME, is_valid_timeout
from query_core.scheduling import TimerHandleLike, TimerRegistry


class Removable(ABC):
	"""Base for cache entries that evict themselves after `gc_time` seconds."""

	gc_time: float
	_gc_handle: TimerHandleLike | None
	_gc_timers: TimerRegistry

	def __init__(self, timers: TimerRegistry) -> None:
		self.gc_time = 0.0
		self._gc_handle = None
		self._gc_timers = timers

	def schedule_gc(self) -> None:
		self.cancel_gc()
		if is_valid_timeout(self.gc_time):
			self._gc_handle = self._gc_timers.later(self.gc_time, self._gc_fire)

	def update_gc_time(self, new_gc_time: float | None) -> None:
		# The longest gc_time seen wins.
		self.gc_time = max(
			self.gc_time, DEFAULT_GC_TIME if new_gc_time is None else new_gc_time
		)

	def cancel_gc(self) -> None:
		if self._gc_handle is not None:
			self._gc_handle.cancel()
			self._gc_handle = None

	def _gc_fire(self) -> None:
		self._gc_handle = None
		self.optional_remove()

	@abstractmethod
	def optional_remove(self) -> None: ...
