"""
Pytest configuration and fixtures for pipeline client tests.
"""

import asyncio
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock

# Add client to path for imports
client_path = Path(__file__).parent.parent / "client"
sys.path.insert(0, str(client_path))


@pytest.fixture
def sample_student():
    """Sample student record as returned by the service."""
    return {
        "studentId": 123,
        "firstName": "Amina",
        "lastName": "Otieno",
        "dob": "2004-03-17",
        "studentClass": "Class3",
        "score": 71.5
    }


@pytest.fixture
def sample_page(sample_student):
    """Sample paginated listing response."""
    return {
        "content": [sample_student],
        "totalElements": 41,
        "totalPages": 5,
        "size": 10,
        "number": 0
    }


@pytest.fixture
def registry():
    """Stopwatch registry with the default 10ms cadence."""
    from services.stopwatch import StopwatchRegistry
    return StopwatchRegistry(tick_ms=10)


@pytest.fixture
def gateway():
    """Gateway double: every operation is an AsyncMock."""
    from integrations.transfer_gateway import TransferGateway
    return AsyncMock(spec=TransferGateway)


@pytest.fixture
def release():
    """Event that blocked gateway calls wait on."""
    return asyncio.Event()


@pytest.fixture
def blocking():
    """Factory for side effects that hold a gateway call until an event is set."""
    def factory(event, result):
        async def side_effect(*args, **kwargs):
            await event.wait()
            if isinstance(result, Exception):
                raise result
            return result
        return side_effect
    return factory


@pytest.fixture
def delayed():
    """Factory for side effects that answer after a delay."""
    def factory(seconds, result):
        async def side_effect(*args, **kwargs):
            await asyncio.sleep(seconds)
            if isinstance(result, Exception):
                raise result
            return result
        return side_effect
    return factory
