import asyncio
import logging
from collections.abc import Callable
from typing import override

from query_core.scheduling import running_loop
from query_core.subscribable import Subscribable

logger = logging.getLogger(__name__)

FocusListener = Callable[[bool], None]
FocusHandler = Callable[[bool | None], None]
FocusSetup = Callable[[FocusHandler], Callable[[], None] | None]


def _default_focus_setup(_handler: FocusHandler) -> Callable[[], None] | None:
	# No windowing system to listen to: the process is always focused.
	return None


class FocusManager(Subscribable[FocusListener]):
	"""Process-wide "window focused" signal.

	A platform listener is installed through `set_event_listener` when the first
	listener subscribes and removed after the last one leaves. The handler it
	receives may be called from any thread; calls made off the event loop are
	forwarded to the loop that was running when the listener was installed.
	"""

	_focused: bool | None
	_setup: FocusSetup
	_cleanup: Callable[[], None] | None
	_installed: bool
	_loop: asyncio.AbstractEventLoop | None

	def __init__(self) -> None:
		super().__init__()
		self._focused = None
		self._setup = _default_focus_setup
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

	def set_event_listener(self, setup: FocusSetup) -> None:
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

	def _handle(self, focused: bool | None = None) -> None:
		loop = self._loop
		if loop is None or loop.is_closed() or running_loop() is loop:
			self._apply(focused)
		else:
			loop.call_soon_threadsafe(self._apply, focused)

	def _apply(self, focused: bool | None) -> None:
		if isinstance(focused, bool):
			self.set_focused(focused)
		else:
			self.on_focus()

	def set_focused(self, focused: bool | None = None) -> None:
		"""Override focus detection. `None` reverts to the platform value."""
		if self._focused is not focused:
			self._focused = focused
			logger.debug("Focus changed: %s", self.is_focused())
			self.on_focus()

	def on_focus(self) -> None:
		focused = self.is_focused()
		for listener in self.iter_listeners():
			listener(focused)

	def is_focused(self) -> bool:
		if self._focused is not None:
			return self._focused
		return True


focus_manager = FocusManager()
