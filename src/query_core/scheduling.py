import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, Protocol, TypeVar

from anyio import from_thread

T = TypeVar("T")
P = ParamSpec("P")


class TimerHandleLike(Protocol):
	def cancel(self) -> None: ...
	def cancelled(self) -> bool: ...


def running_loop() -> asyncio.AbstractEventLoop | None:
	try:
		return asyncio.get_running_loop()
	except RuntimeError:
		return None


def create_task(
	coroutine: Awaitable[T],
	*,
	name: str | None = None,
	on_done: Callable[[asyncio.Task[T]], None] | None = None,
) -> asyncio.Task[T]:
	"""Schedule `coroutine` on the event loop, from the loop or from an anyio
	worker thread."""

	def _spawn() -> asyncio.Task[T]:
		task = asyncio.ensure_future(coroutine)
		if name is not None:
			task.set_name(name)
		if on_done:
			task.add_done_callback(on_done)
		return task

	if running_loop() is not None:
		return _spawn()

	async def _runner() -> asyncio.Task[T]:
		return _spawn()

	return from_thread.run(_runner)


def create_future_on_loop() -> asyncio.Future[Any]:
	"""Create an asyncio Future on the event loop from any thread."""
	loop = running_loop()
	if loop is not None:
		return loop.create_future()

	async def _create() -> asyncio.Future[Any]:
		return asyncio.get_running_loop().create_future()

	return from_thread.run(_create)


def retrieve_exception(fut: "asyncio.Future[Any]") -> None:
	"""Done-callback marking a future's exception as retrieved.

	Failures are surfaced through query state, so an unawaited fetch must not
	produce "exception was never retrieved" noise.
	"""
	if not fut.cancelled():
		fut.exception()


def _report(
	loop: asyncio.AbstractEventLoop, message: str, fn: Callable[..., Any], exc: Exception
) -> None:
	loop.call_exception_handler(
		{"message": message, "exception": exc, "context": {"callback": fn}}
	)


def later(
	delay: float, fn: Callable[P, Any], *args: P.args, **kwargs: P.kwargs
) -> asyncio.TimerHandle:
	"""
	Run `fn(*args, **kwargs)` once after `delay` seconds.
	A raising callback is reported to the loop's exception handler.
	"""
	loop = running_loop()
	if loop is None:
		raise RuntimeError("later() requires a running event loop")

	def _run() -> None:
		try:
			fn(*args, **kwargs)
		except Exception as exc:
			_report(loop, "Unhandled exception in later() callback", fn, exc)

	return loop.call_later(max(delay, 0.0), _run)


class RepeatHandle:
	"""Re-arms a loop timer after every run until cancelled.

	The next interval starts counting once the callback has returned, and a
	callback that cancels its own handle is not re-armed.
	"""

	_loop: asyncio.AbstractEventLoop
	_interval: float
	_fn: Callable[[], Any]
	_timer: asyncio.TimerHandle | None
	_cancelled: bool

	def __init__(
		self, loop: asyncio.AbstractEventLoop, interval: float, fn: Callable[[], Any]
	) -> None:
		self._loop = loop
		self._interval = interval
		self._fn = fn
		self._timer = None
		self._cancelled = False

	def arm(self) -> None:
		self._timer = self._loop.call_later(self._interval, self._tick)

	def _tick(self) -> None:
		self._timer = None
		if self._cancelled:
			return
		try:
			self._fn()
		except Exception as exc:
			_report(self._loop, "Unhandled exception in repeat() callback", self._fn, exc)
		if not self._cancelled:
			self.arm()

	def cancel(self) -> None:
		if self._cancelled:
			return
		self._cancelled = True
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None

	def cancelled(self) -> bool:
		return self._cancelled


def repeat(
	interval: float, fn: Callable[P, Any], *args: P.args, **kwargs: P.kwargs
) -> RepeatHandle:
	"""Run `fn(*args, **kwargs)` every `interval` seconds until cancelled."""
	loop = running_loop()
	if loop is None:
		raise RuntimeError("repeat() requires a running event loop")
	handle = RepeatHandle(loop, interval, lambda: fn(*args, **kwargs))
	handle.arm()
	return handle


class TaskRegistry:
	"""Strong references to running tasks, so none is garbage collected
	mid-flight, with a way to cancel them all on shutdown."""

	_tasks: set[asyncio.Task[Any]]
	name: str | None

	def __init__(self, name: str | None = None) -> None:
		self._tasks = set()
		self.name = name

	def __len__(self) -> int:
		return len(self._tasks)

	def track(self, task: asyncio.Task[T]) -> asyncio.Task[T]:
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return task

	def create(
		self,
		coroutine: Awaitable[T],
		*,
		name: str | None = None,
		on_done: Callable[[asyncio.Task[T]], None] | None = None,
	) -> asyncio.Task[T]:
		task = create_task(coroutine, name=name, on_done=on_done)
		return self.track(task)

	def cancel_all(self) -> None:
		for task in list(self._tasks):
			if not task.done():
				task.cancel()
		self._tasks.clear()


class _RegisteredTimer:
	__slots__: tuple[str, ...] = ("_handle", "_registry")
	_handle: asyncio.TimerHandle | RepeatHandle
	_registry: "TimerRegistry"

	def __init__(
		self, handle: asyncio.TimerHandle | RepeatHandle, registry: "TimerRegistry"
	) -> None:
		self._handle = handle
		self._registry = registry

	def cancel(self) -> None:
		if not self._handle.cancelled():
			self._handle.cancel()
		self._registry.discard(self)

	def cancelled(self) -> bool:
		return self._handle.cancelled()


class TimerRegistry:
	"""Timers owned by one cache: gc timeouts, stale timeouts and refetch
	intervals. One-shot timers leave the registry once they fire."""

	_handles: set[TimerHandleLike]
	name: str | None

	def __init__(self, name: str | None = None) -> None:
		self._handles = set()
		self.name = name

	def __len__(self) -> int:
		return len(self._handles)

	def discard(self, handle: TimerHandleLike | None) -> None:
		if handle is None:
			return
		self._handles.discard(handle)

	def later(
		self,
		delay: float,
		fn: Callable[P, Any],
		*args: P.args,
		**kwargs: P.kwargs,
	) -> TimerHandleLike:
		def fire() -> None:
			self.discard(timer)
			fn(*args, **kwargs)

		timer = _RegisteredTimer(later(delay, fire), self)
		self._handles.add(timer)
		return timer

	def repeat(
		self,
		interval: float,
		fn: Callable[P, Any],
		*args: P.args,
		**kwargs: P.kwargs,
	) -> TimerHandleLike:
		timer = _RegisteredTimer(repeat(interval, fn, *args, **kwargs), self)
		self._handles.add(timer)
		return timer

	def cancel_all(self) -> None:
		for handle in list(self._handles):
			handle.cancel()
		self._handles.clear()
