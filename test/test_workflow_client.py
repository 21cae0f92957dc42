import asyncio

import pytest
from workflow_poll_client.cancellation import CancellationToken
from workflow_poll_client.errors import ErrorKind, WorkflowError
from workflow_poll_client.models import OperationHandle, PollingConfig
from workflow_poll_client.persistence import MemoryHandleStore
from workflow_poll_client.settings import ClientSettings
from workflow_poll_client.workflow_client import WorkflowClient
from workflow_server import API_KEY


@pytest.mark.asyncio
async def test_successful_completion(server, config):
    """Test normal successful completion flow."""
    progress_updates = []
    server_instance, base_url = server

    async def progress_callback(progress):
        progress_updates.append(progress)

    client = WorkflowClient(base_url=base_url, config=config, on_progress=progress_callback)

    result = await client.execute_with_polling("/webhook/long-running", data={"task": "report"})

    assert result.result["ok"] is True
    assert result.result["executionId"] == result.handle.id
    assert result.attempts >= 2
    assert result.elapsed_time > 0
    assert progress_updates[-1] == 1.0
    assert progress_updates == sorted(progress_updates)


@pytest.mark.asyncio
async def test_immediate_result_skips_polling(server, config):
    """Test that a synchronous webhook answer is returned without polling."""
    server_instance, base_url = server
    client = WorkflowClient(base_url=base_url, config=config)

    result = await client.execute_with_polling("/webhook/sync", data={"a": 1})

    assert result.result == {"echo": {"a": 1}, "files": {}}
    assert result.attempts == 0
    assert result.handle is None
    assert server_instance.status_requests == 0


@pytest.mark.asyncio
async def test_error_scenario(server, config):
    """Test error handling when the workflow reports a failure."""
    server_instance, base_url = server
    server_instance.error_rate = 1.0
    store = MemoryHandleStore()

    client = WorkflowClient(base_url=base_url, config=config, store=store)
    with pytest.raises(WorkflowError) as exc_info:
        await client.execute_with_polling("/webhook/long-running")

    assert exc_info.value.kind == ErrorKind.remote_error
    assert exc_info.value.message == "node Transform failed"
    assert server_instance.status_requests == 1
    assert store.load() is None


@pytest.mark.asyncio
async def test_timeout_scenario(server, config):
    """Test timeout handling."""
    server_instance, base_url = server
    server_instance.completion_time = 30.0
    store = MemoryHandleStore()
    config = config.model_copy(update={"timeout": 1.0})

    client = WorkflowClient(base_url=base_url, config=config, store=store)

    with pytest.raises(WorkflowError) as exc_info:
        await client.execute_with_polling("/webhook/long-running")

    assert exc_info.value.kind == ErrorKind.timeout
    assert exc_info.value.retryable
    assert store.load() is not None


@pytest.mark.asyncio
async def test_transient_server_errors_are_retried(server, config):
    """Test that 503 answers from the status endpoint do not end polling."""
    server_instance, base_url = server
    server_instance.fail_next = 2

    client = WorkflowClient(base_url=base_url, config=config)
    result = await client.execute_with_polling("/webhook/long-running")

    assert result.result["ok"] is True
    assert server_instance.status_requests >= 3


@pytest.mark.asyncio
async def test_malformed_status_body_ends_polling(server, config):
    """Test that an undecodable status answer fails with a typed error and keeps the handle."""
    server_instance, base_url = server
    server_instance.malformed_next = 1
    store = MemoryHandleStore()

    client = WorkflowClient(base_url=base_url, config=config, store=store)
    with pytest.raises(WorkflowError) as exc_info:
        await client.execute_with_polling("/webhook/long-running")

    assert exc_info.value.kind == ErrorKind.invalid_response
    assert exc_info.value.operation_id is not None
    assert store.load().handle.id == exc_info.value.operation_id
    assert server_instance.status_requests == 1


@pytest.mark.asyncio
async def test_server_unavailable(config, unused_tcp_port_factory):
    """Test behavior when server is not available."""
    client = WorkflowClient(
        base_url=f"http://localhost:{unused_tcp_port_factory()}", config=config
    )

    with pytest.raises(WorkflowError) as exc_info:
        await client.execute_with_polling("/webhook/long-running")

    assert exc_info.value.kind == ErrorKind.network


@pytest.mark.asyncio
async def test_missing_status_endpoint_fails_before_polling(server, config):
    """Test that polling never starts without a status location."""
    server_instance, base_url = server
    server_instance.include_status_endpoint = False
    store = MemoryHandleStore()

    client = WorkflowClient(base_url=base_url, config=config, store=store)
    with pytest.raises(WorkflowError) as exc_info:
        await client.execute_with_polling("/webhook/long-running")

    assert exc_info.value.kind == ErrorKind.missing_wiring
    assert server_instance.status_requests == 0
    assert store.load() is None


@pytest.mark.asyncio
async def test_configured_status_endpoint_is_used_as_fallback(server, config):
    """Test the configured status endpoint when the workflow names none."""
    server_instance, base_url = server
    server_instance.include_status_endpoint = False
    config = config.model_copy(update={"status_endpoint": "/webhook/status/{operationId}"})

    client = WorkflowClient(base_url=base_url, config=config)
    result = await client.execute_with_polling("/webhook/long-running")

    assert result.result["ok"] is True


@pytest.mark.asyncio
async def test_cancellation(server, config):
    """Test that cancelling stops polling with a cancelled error."""
    server_instance, base_url = server
    server_instance.completion_time = 30.0
    token = CancellationToken()

    client = WorkflowClient(base_url=base_url, config=config)
    task = asyncio.create_task(
        client.execute_with_polling("/webhook/long-running", cancel_token=token)
    )
    await asyncio.sleep(0.5)
    token.cancel()
    requests_at_cancel = server_instance.status_requests

    with pytest.raises(WorkflowError) as exc_info:
        await asyncio.wait_for(task, timeout=2.0)

    assert exc_info.value.kind == ErrorKind.cancelled
    assert server_instance.status_requests <= requests_at_cancel + 1


@pytest.mark.asyncio
async def test_persisted_handle_is_cleared_on_success(server, config):
    """Test that the stored handle lives only while the operation is running."""
    server_instance, base_url = server
    store = MemoryHandleStore()
    saved = []

    client = WorkflowClient(
        base_url=base_url,
        config=config,
        store=store,
        on_progress=lambda progress: saved.append(store.load()),
    )
    result = await client.execute_with_polling("/webhook/long-running")

    assert saved and saved[0].handle == result.handle
    assert store.load() is None


@pytest.mark.asyncio
async def test_resume_from_store(server, config):
    """Test resuming a still running operation after an interruption."""
    server_instance, base_url = server
    server_instance.completion_time = 1.5
    store = MemoryHandleStore()
    token = CancellationToken()

    first = WorkflowClient(base_url=base_url, config=config, store=store)
    task = asyncio.create_task(
        first.execute_with_polling("/webhook/long-running", cancel_token=token)
    )
    await asyncio.sleep(0.5)
    token.cancel()
    with pytest.raises(WorkflowError):
        await task

    persisted = store.load()
    assert persisted is not None

    second = WorkflowClient(base_url=base_url, config=config, store=store)
    result = await second.resume_polling()

    assert result.handle.id == persisted.handle.id
    assert result.result["executionId"] == persisted.handle.id
    assert result.attempts < 10
    assert store.load() is None


@pytest.mark.asyncio
async def test_resume_with_explicit_handle(server, config):
    server_instance, base_url = server
    execution_id = server_instance.start_operation()
    handle = OperationHandle(id=execution_id, status_location="/webhook/status/{executionId}")

    result = await WorkflowClient(base_url=base_url, config=config).resume_polling(handle)

    assert result.result["executionId"] == execution_id


@pytest.mark.asyncio
async def test_resume_without_handle_fails(config):
    client = WorkflowClient(base_url="http://localhost", config=config, store=MemoryHandleStore())

    with pytest.raises(WorkflowError) as exc_info:
        await client.resume_polling()

    assert exc_info.value.kind == ErrorKind.missing_wiring


@pytest.mark.asyncio
async def test_execute_and_poll_uses_execution_api(server):
    """Test the execution resource flow end to end."""
    server_instance, base_url = server
    store = MemoryHandleStore()
    config = PollingConfig(base_interval=0.2, timeout=10.0, max_attempts=None)

    client = WorkflowClient(base_url=base_url, api_key=API_KEY, store=store)
    result = await client.execute_and_poll("/webhook/execution", config=config)

    assert result.result == {"report": {"rows": 3}}
    assert store.load() is None


@pytest.mark.asyncio
async def test_execute_and_poll_requires_api_key(server):
    _, base_url = server

    with pytest.raises(WorkflowError) as exc_info:
        await WorkflowClient(base_url=base_url).execute_and_poll("/webhook/execution")

    assert exc_info.value.kind == ErrorKind.missing_wiring


@pytest.mark.asyncio
async def test_execute_and_poll_requires_execution_id(server):
    _, base_url = server

    with pytest.raises(WorkflowError) as exc_info:
        await WorkflowClient(base_url=base_url, api_key=API_KEY).execute_and_poll("/webhook/sync")

    assert exc_info.value.kind == ErrorKind.validation_error


@pytest.mark.asyncio
async def test_resume_execution_polling(server):
    server_instance, base_url = server
    execution_id = server_instance.start_operation()
    config = PollingConfig(base_interval=0.2, timeout=10.0)

    client = WorkflowClient(base_url=base_url, api_key=API_KEY)
    result = await client.resume_execution_polling(OperationHandle(id=execution_id), config=config)

    assert result.result == {"report": {"rows": 3}}


@pytest.mark.asyncio
async def test_multiple_clients(server, config):
    """Test multiple clients polling simultaneously."""
    server_instance, base_url = server

    async def run_client():
        client = WorkflowClient(base_url=base_url, config=config)
        return await client.execute_with_polling("/webhook/long-running")

    results = await asyncio.gather(*[run_client() for _ in range(3)])

    assert len({result.handle.id for result in results}) == 3
    for result in results:
        assert result.result["executionId"] == result.handle.id


def test_from_settings(monkeypatch):
    monkeypatch.setenv("WORKFLOW_BASE_URL", "http://n8n.internal:5678/")
    monkeypatch.setenv("WORKFLOW_API_KEY", "secret")
    monkeypatch.setenv("WORKFLOW_WEBHOOK_TOKEN", "token")
    monkeypatch.setenv("WORKFLOW_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("WORKFLOW_POLL_BACKOFF_MODE", "exponential")

    client = WorkflowClient.from_settings(ClientSettings())

    assert client.base_url == "http://n8n.internal:5678"
    assert client.api_key == "secret"
    assert client.headers["Authorization"] == "Bearer token"
    assert client.config.base_interval == 0.5
    assert client.config.backoff_mode.value == "exponential"
