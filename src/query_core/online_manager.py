import asyncio
import logging
from collections.abc import Callable
from typing import override

from query_core.scheduling import running_loop
from query_core.subscribable import Subscribable

logger = logging.getLogger(__name__)

OnlineListener = Callable[[bool], None]
OnlineHandler = Callable[[bool], None]
OnlineSetup = Callable[[OnlineHandler], Callable[[], None] | None]


def _default_online_setup(_handler: OnlineHandler) -> Callable[[], None] | None:
	return None


class OnlineManager(Subscribable[OnlineListener]):
	"""Process-wide connectivity signal. Online unless told otherwise."""

	_override: bool | None
	_setup: OnlineSetup
	_cleanup: Callable[[], None] | None
	_installed: bool
	_loop: asyncio.AbstractEventLoop | None

	def __init__(self) -> None:
		super().__init__()
		self._override = None
		self._setup = _default_online_setup
		self._cleanup = None
		self._installed = False
		self._loop = None

	@override
	def on_subscribe(self) -> None:
		if not self._installed:
			self.set_event_listener(self._setup)

	@override
	def on_unsubscribe(self) -> None:
		if not self.has_listeners():
			self._teardown()

	def set_event_listener(self, setup: OnlineSetup) -> None:
		self._setup = setup
		self._teardown()
		self._loop = running_loop()
		self._installed = True
		self._cleanup = setup(self._handle)

	def _teardown(self) -> None:
		cleanup = self._cleanup
		self._cleanup = None
		self._installed = False
		if cleanup is not None:
			cleanup()

	def _handle(self, online: bool) -> None:
		loop = self._loop
		if loop is None or loop.is_closed() or running_loop() is loop:
			self.set_online(online)
		else:
			loop.call_soon_threadsafe(self.set_online, online)

	def set_online(self, online: bool | None = None) -> None:
		"""Override connectivity. `None` reverts to the platform value."""
		before = self.is_online()
		self._override = online
		after = self.is_online()
		if before != after:
			logger.debug("Connectivity changed: online=%s", after)
			for listener in self.iter_listeners():
				listener(after)

	def is_online(self) -> bool:
		if self._override is not None:
			return self._override
		return True


online_manager = OnlineManager()
