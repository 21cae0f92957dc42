from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from workflow_poll_client.models import PollingConfig
from workflow_server import WorkflowServer

BASE_URL_TEMPLATE = "http://localhost:{}"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[WorkflowServer, str], None]:
    """Start and yield a test WorkflowServer instance and its base URL on a random port."""
    port = unused_tcp_port_factory()
    server_instance = WorkflowServer(completion_time=1.0, error_rate=0.0)
    await server_instance.start(port=port)
    try:
        yield server_instance, BASE_URL_TEMPLATE.format(port)
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> PollingConfig:
    """Provide default polling configuration for the client."""
    return PollingConfig(
        base_interval=0.2,
        max_interval=0.5,
        timeout=10.0,
        max_attempts=20,
    )
