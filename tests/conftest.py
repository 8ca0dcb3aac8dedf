"""
Pytest configuration and fixtures for the order saga orchestrator.
"""

import sys
from pathlib import Path

# Add the project root and this directory to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

import pytest
import pytest_asyncio

from order_saga.execution.manager import InstanceManager
from order_saga.models import OrderPayload
from order_saga.storage.backends.memory import InMemoryHistoryLog
from support import Services, make_executor


@pytest.fixture
def widget_order():
    return OrderPayload(name="Widget", quantity=5, totalCost="50")


@pytest.fixture
def services():
    return Services()


@pytest.fixture
def history_log():
    return InMemoryHistoryLog()


@pytest.fixture
def executor(history_log, services):
    return make_executor(history_log, services)


@pytest_asyncio.fixture
async def manager(history_log, executor):
    manager = InstanceManager(history_log, executor, concurrency=4)
    await manager.start()
    yield manager
    await manager.stop()
