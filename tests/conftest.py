import pytest
import pytest_asyncio
from query_core import QueryClient, focus_manager, online_manager
from query_core.test_helpers import flush


@pytest.fixture(autouse=True)
def reset_managers():  # pyright: ignore[reportUnusedFunction]
	focus_manager.set_focused(None)
	online_manager.set_online(None)
	yield
	focus_manager.set_focused(None)
	online_manager.set_online(None)


@pytest_asyncio.fixture
async def client():
	client = QueryClient()
	client.mount()
	yield client
	client.unmount()
	client.get_query_cache().dispose()
	await flush()
