import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, Literal, TypeAlias, TypeVar

from query_core.common import NetworkMode
from query_core.errors import QueryCancelledError
from query_core.focus_manager import FocusManager, focus_manager as default_focus_manager
from query_core.helpers import call_flexible, maybe_await
from query_core.online_manager import (
	OnlineManager,
	online_manager as default_online_manager,
)
from query_core.scheduling import TaskRegistry, create_future_on_loop, retrieve_exception

T = TypeVar("T")

logger = logging.getLogger(__name__)

RetryValue: TypeAlias = bool | int | Callable[[int, Exception], bool]
RetryDelayValue: TypeAlias = float | Callable[[int, Exception], float]
RetryerStatus: TypeAlias = Literal["pending", "resolved", "rejected"]


def default_retry_delay(failure_count: int) -> float:
	return min(2.0**failure_count, 30.0)


def can_fetch(
	network_mode: NetworkMode | None, online_manager: OnlineManager | None = None
) -> bool:
	if (network_mode or "online") == "online":
		return (online_manager or default_online_manager).is_online()
	return True


class Retryer(Generic[T]):
	"""
	Runs `fn` until it succeeds or the retry budget is spent.

	The outcome is published through `future`. Cancelling rejects that future
	right away with `QueryCancelledError`; an attempt that is already running
	is left alone and whatever it produces is ignored.
	"""

	fn: Callable[[], Awaitable[T] | T]
	future: asyncio.Future[T]
	failure_count: int

	_retry: RetryValue
	_retry_delay: RetryDelayValue | None
	_network_mode: NetworkMode
	_on_fail: Callable[[int, Exception], None] | None
	_on_pause: Callable[[], None] | None
	_on_continue: Callable[[], None] | None
	_on_cancel: Callable[[QueryCancelledError], None] | None
	_can_run: Callable[[], bool]
	_retry_cancelled: bool
	_task: asyncio.Task[None] | None
	_continue_fut: asyncio.Future[None] | None
	_sleep_fut: asyncio.Future[None] | None

	def __init__(
		self,
		fn: Callable[[], Awaitable[T] | T],
		*,
		retry: RetryValue = 3,
		retry_delay: RetryDelayValue | None = None,
		network_mode: NetworkMode = "online",
		on_fail: Callable[[int, Exception], None] | None = None,
		on_pause: Callable[[], None] | None = None,
		on_continue: Callable[[], None] | None = None,
		on_cancel: Callable[[QueryCancelledError], None] | None = None,
		can_run: Callable[[], bool] | None = None,
		focus_manager: FocusManager | None = None,
		online_manager: OnlineManager | None = None,
		tasks: TaskRegistry | None = None,
	) -> None:
		self.fn = fn
		self.future = create_future_on_loop()
		self.future.add_done_callback(retrieve_exception)
		self.failure_count = 0
		self._retry = retry
		self._retry_delay = retry_delay
		self._network_mode = network_mode
		self._on_fail = on_fail
		self._on_pause = on_pause
		self._on_continue = on_continue
		self._on_cancel = on_cancel
		self._can_run = can_run or (lambda: True)
		self._focus_manager = focus_manager or default_focus_manager
		self._online_manager = online_manager or default_online_manager
		self._tasks = tasks
		self._retry_cancelled = False
		self._task = None
		self._continue_fut = None
		self._sleep_fut = None

	# -----------------
	# Public API
	# -----------------

	def start(self) -> asyncio.Future[T]:
		coroutine = self._run()
		if self._tasks is not None:
			self._task = self._tasks.create(coroutine, name="retryer")
		else:
			self._task = asyncio.ensure_future(coroutine)
		return self.future

	def status(self) -> RetryerStatus:
		if not self.future.done():
			return "pending"
		if self.future.cancelled() or self.future.exception() is not None:
			return "rejected"
		return "resolved"

	def is_resolved(self) -> bool:
		return self.future.done()

	def cancel(self, *, revert: bool = False, silent: bool = False) -> None:
		if self.is_resolved():
			return
		error = QueryCancelledError(revert=revert, silent=silent)
		self._reject(error)
		if self._on_cancel is not None:
			self._on_cancel(error)

	def cancel_retry(self) -> None:
		"""Let the current attempt finish but do not start another one."""
		self._retry_cancelled = True

	def continue_retry(self) -> None:
		self._retry_cancelled = False

	def continue_(self) -> asyncio.Future[T]:
		"""Resume a paused retryer if it is now allowed to proceed."""
		self._wake_continue()
		return self.future

	def can_start(self) -> bool:
		return can_fetch(self._network_mode, self._online_manager) and self._can_run()

	def can_continue(self) -> bool:
		return (
			self._focus_manager.is_focused()
			and (
				self._network_mode == "always" or self._online_manager.is_online()
			)
			and self._can_run()
		)

	# -----------------
	# Run loop
	# -----------------

	async def _run(self) -> None:
		try:
			if not self.can_start():
				await self._pause()
			while not self.is_resolved():
				try:
					value = await maybe_await(self.fn())
				except asyncio.CancelledError:
					raise
				except Exception as error:
					if self.is_resolved():
						return
					if self._retry_cancelled or not self._should_retry(error):
						self._reject(error)
						return
					delay = self._compute_delay(error)
					self.failure_count += 1
					if self._on_fail is not None:
						self._on_fail(self.failure_count, error)
					logger.debug(
						"Attempt %d failed, retrying in %.3fs", self.failure_count, delay
					)
					await self._sleep(delay)
					if not self.can_continue():
						await self._pause()
					if self._retry_cancelled:
						self._reject(error)
						return
				else:
					self._resolve(value)
					return
		except asyncio.CancelledError:
			self.cancel(revert=True)
			raise

	def _should_retry(self, error: Exception) -> bool:
		retry = self._retry
		# bool is an int subclass
		if isinstance(retry, bool):
			return retry
		if isinstance(retry, int):
			return self.failure_count < retry
		if callable(retry):
			return bool(call_flexible(retry, self.failure_count, error))
		return False

	def _compute_delay(self, error: Exception) -> float:
		retry_delay = self._retry_delay
		if retry_delay is None:
			return default_retry_delay(self.failure_count)
		if callable(retry_delay):
			return float(call_flexible(retry_delay, self.failure_count, error))
		return float(retry_delay)

	async def _sleep(self, delay: float) -> None:
		if self.is_resolved():
			return
		loop = asyncio.get_running_loop()
		self._sleep_fut = loop.create_future()
		try:
			await asyncio.wait({self._sleep_fut}, timeout=max(delay, 0.0))
		finally:
			self._sleep_fut = None

	async def _pause(self) -> None:
		if self.is_resolved():
			return
		loop = asyncio.get_running_loop()
		self._continue_fut = loop.create_future()
		logger.debug("Retryer paused")
		if self._on_pause is not None:
			self._on_pause()
		try:
			await self._continue_fut
		finally:
			self._continue_fut = None
		if not self.is_resolved():
			logger.debug("Retryer continued")
			if self._on_continue is not None:
				self._on_continue()

	def _wake_continue(self) -> None:
		fut = self._continue_fut
		if fut is None or fut.done():
			return
		if self.is_resolved() or self.can_continue():
			fut.set_result(None)

	def _wake_all(self) -> None:
		if self._sleep_fut is not None and not self._sleep_fut.done():
			self._sleep_fut.set_result(None)
		self._wake_continue()

	def _resolve(self, value: T) -> None:
		if self.is_resolved():
			return
		self.future.set_result(value)
		self._wake_all()

	def _reject(self, error: BaseException) -> None:
		if self.is_resolved():
			return
		self.future.set_exception(error)
		self._wake_all()
