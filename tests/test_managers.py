import threading
from collections.abc import Callable

import pytest
from query_core.focus_manager import FocusManager
from query_core.online_manager import OnlineManager
from query_core.test_helpers import wait_for

# ─────────────────────────────────────────────────────────────────────────────
# FocusManager
# ─────────────────────────────────────────────────────────────────────────────


def test_focus_defaults_to_focused():
	assert FocusManager().is_focused() is True


def test_set_focused_notifies_listeners():
	manager = FocusManager()
	values: list[bool] = []
	manager.subscribe(values.append)

	manager.set_focused(False)
	manager.set_focused(False)
	manager.set_focused(True)

	assert values == [False, True]
	assert manager.is_focused() is True


def test_set_focused_none_reverts_to_platform_value():
	manager = FocusManager()
	manager.set_focused(False)
	assert manager.is_focused() is False
	manager.set_focused(None)
	assert manager.is_focused() is True


def test_unsubscribed_listener_stops_receiving():
	manager = FocusManager()
	values: list[bool] = []
	unsubscribe = manager.subscribe(values.append)
	unsubscribe()
	unsubscribe()
	manager.set_focused(False)
	assert values == []
	assert not manager.has_listeners()


def test_event_listener_lifecycle_follows_subscribers():
	manager = FocusManager()
	installed: list[Callable[[bool | None], None]] = []
	cleaned: list[bool] = []

	def setup(handler: Callable[[bool | None], None]) -> Callable[[], None]:
		installed.append(handler)
		return lambda: cleaned.append(True)

	manager.set_event_listener(setup)
	assert len(installed) == 1

	unsubscribe_a = manager.subscribe(lambda _: None)
	unsubscribe_b = manager.subscribe(lambda _: None)
	assert len(installed) == 1

	unsubscribe_a()
	assert cleaned == []
	unsubscribe_b()
	assert cleaned == [True]

	manager.subscribe(lambda _: None)
	assert len(installed) == 2


def test_replacing_event_listener_cleans_up_previous():
	manager = FocusManager()
	cleaned: list[str] = []
	manager.set_event_listener(lambda _handler: lambda: cleaned.append("first"))
	manager.set_event_listener(lambda _handler: lambda: cleaned.append("second"))
	assert cleaned == ["first"]


def test_platform_handler_drives_focus():
	manager = FocusManager()
	handlers: list[Callable[[bool | None], None]] = []

	def setup(handler: Callable[[bool | None], None]) -> None:
		handlers.append(handler)

	manager.set_event_listener(setup)
	values: list[bool] = []
	manager.subscribe(values.append)

	handlers[0](False)
	assert manager.is_focused() is False
	# No argument re-broadcasts the current value.
	handlers[0](None)
	assert values == [False, False]


@pytest.mark.asyncio
async def test_handler_called_off_loop_is_forwarded_to_loop():
	manager = FocusManager()
	handlers: list[Callable[[bool | None], None]] = []
	manager.set_event_listener(lambda handler: handlers.append(handler))
	values: list[tuple[bool, int]] = []
	manager.subscribe(lambda focused: values.append((focused, threading.get_ident())))

	thread = threading.Thread(target=lambda: handlers[0](False))
	thread.start()
	thread.join()

	assert await wait_for(lambda: len(values) == 1, timeout=0.5)
	assert values[0] == (False, threading.get_ident())


# ─────────────────────────────────────────────────────────────────────────────
# OnlineManager
# ─────────────────────────────────────────────────────────────────────────────


def test_online_defaults_to_online():
	assert OnlineManager().is_online() is True


def test_set_online_notifies_on_change_only():
	manager = OnlineManager()
	values: list[bool] = []
	manager.subscribe(values.append)

	manager.set_online(True)
	manager.set_online(False)
	manager.set_online(False)
	manager.set_online(None)

	assert values == [False, True]
	assert manager.is_online() is True


def test_online_event_listener_lifecycle():
	manager = OnlineManager()
	handlers: list[Callable[[bool], None]] = []
	cleaned: list[bool] = []

	def setup(handler: Callable[[bool], None]) -> Callable[[], None]:
		handlers.append(handler)
		return lambda: cleaned.append(True)

	manager.set_event_listener(setup)
	values: list[bool] = []
	unsubscribe = manager.subscribe(values.append)

	handlers[0](False)
	assert values == [False]
	assert manager.is_online() is False

	unsubscribe()
	assert cleaned == [True]
