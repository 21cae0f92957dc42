import asyncio

from workflow_poll_client.errors import ErrorKind, WorkflowError
from workflow_poll_client.models import BackoffMode, PollingConfig
from workflow_poll_client.persistence import FileHandleStore
from workflow_poll_client.workflow_client import WorkflowClient
from workflow_server import WorkflowServer


async def progress_changed(progress):
    print(f"Progress: {progress * 100:.0f}%")


async def main():
    PORT = 8000
    server = WorkflowServer(completion_time=8.0, error_rate=0.05)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollingConfig(
        base_interval=0.5,
        max_interval=4.0,
        backoff_mode=BackoffMode.exponential,
        timeout=60.0,
        max_attempts=None,
    )

    client = WorkflowClient(
        f"http://localhost:{PORT}",
        config,
        store=FileHandleStore(".workflow-state/long-running.json"),
        on_progress=progress_changed,
    )

    try:
        final = await client.execute_with_polling("/webhook/long-running", data={"task": "report"})
        print(f"Result: {final.result}")
        print(f"Attempts: {final.attempts}, total time: {final.elapsed_time:.2f}s")
    except WorkflowError as e:
        if e.kind == ErrorKind.cancelled:
            pass
        elif e.retryable:
            print(f"Polling gave up ({e.kind.value}), operation {e.operation_id} can be resumed")
        else:
            print(f"Workflow failed: {e.message}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
