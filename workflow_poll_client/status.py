import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger
from pydantic import ValidationError
from workflow_poll_client.errors import ErrorKind, WorkflowError, kind_for_status
from workflow_poll_client.invoker import Invoker, error_from_response, usable_progress
from workflow_poll_client.models import (
    Execution,
    ExecutionStatus,
    OperationHandle,
    OperationState,
    StatusRecord,
)

ID_PLACEHOLDERS = ("{operationId}", "{executionId}")

API_KEY_HEADER = "X-N8N-API-KEY"


def build_status_url(template: str, operation_id: str) -> str:
    """Resolves a status location for one operation.

    A ``{operationId}`` (or ``{executionId}``) placeholder is substituted;
    without one the id is appended as the ``executionId`` query parameter.
    """
    quoted = quote(operation_id, safe="")
    for placeholder in ID_PLACEHOLDERS:
        if placeholder in template:
            return template.replace(placeholder, quoted)

    separator = "&" if "?" in template else "?"
    return f"{template}{separator}executionId={quoted}"


def error_text(error: Any) -> Optional[str]:
    """Flattens an error reported by a status endpoint into a message."""
    if error is None or isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return str(error)


class StatusFetcher(ABC):
    """Performs one status check for a remote operation. Implementations never retry."""

    @abstractmethod
    async def fetch(self, handle: OperationHandle) -> StatusRecord:
        ...


class EndpointStatusFetcher(StatusFetcher):
    """Checks status through the custom status endpoint named by the operation handle."""

    def __init__(self, invoker: Invoker):
        self.invoker = invoker
        self.logger = logger

    def status_url(self, handle: OperationHandle) -> str:
        if not handle.status_location:
            raise WorkflowError(
                f"No status location available for operation {handle.id}",
                kind=ErrorKind.missing_wiring,
                operation_id=handle.id,
            )
        return build_status_url(handle.status_location, handle.id)

    async def fetch(self, handle: OperationHandle) -> StatusRecord:
        url = self.status_url(handle)
        body = await self.invoker.request(url, method="GET")
        return self.parse_status(handle, body)

    def parse_status(self, handle: OperationHandle, body: Any) -> StatusRecord:
        if not isinstance(body, dict):
            raise WorkflowError(
                f"Status endpoint returned {type(body).__name__}, expected an object",
                kind=ErrorKind.invalid_response,
                operation_id=handle.id,
            )

        progress = usable_progress(body.get("progress"), handle.id)

        status = body.get("status")
        if status == OperationState.complete.value:
            return StatusRecord(
                state=OperationState.complete, progress=progress, result=body.get("result")
            )
        if status == OperationState.error.value:
            return StatusRecord(
                state=OperationState.error,
                progress=progress,
                error_message=error_text(body.get("error")) or "Workflow failed",
                details=body,
            )
        if status != OperationState.running.value:
            self.logger.debug(f"Unrecognised status {status!r} for {handle.id}, still polling")
        return StatusRecord(state=OperationState.running, progress=progress)


def extract_output(execution: Execution) -> Any:
    """Pulls the workflow result out of an execution resource.

    ``customData`` wins when the resource carries it. Otherwise the result is
    the first main output of the last run of the last executed node: the
    ``json`` of a single item, or a list of them for several items.
    """
    if execution.has_custom_data:
        return execution.custom_data

    result_data = (execution.data or {}).get("resultData") or {}
    run_data = result_data.get("runData") or {}
    last_node = result_data.get("lastNodeExecuted")
    node_runs = run_data.get(last_node) if last_node else None
    if not node_runs:
        return None

    last_run = node_runs[-1] or {}
    main = (last_run.get("data") or {}).get("main") or []
    items = main[0] if main else None
    if not isinstance(items, list) or not items:
        return None

    if len(items) == 1:
        return (items[0] or {}).get("json")
    return [(item or {}).get("json") for item in items]


def estimate_progress(execution: Execution) -> Optional[float]:
    """Fraction of the workflow's nodes that have run, when the resource includes its workflow."""
    nodes = (execution.workflow_data or {}).get("nodes")
    if not nodes:
        return None
    run_data = ((execution.data or {}).get("resultData") or {}).get("runData") or {}
    return min(len(run_data) / len(nodes), 1.0)


def execution_to_status(execution: Execution) -> StatusRecord:
    progress = estimate_progress(execution)

    if execution.status == ExecutionStatus.success:
        return StatusRecord(
            state=OperationState.complete, progress=progress, result=extract_output(execution)
        )
    if execution.status == ExecutionStatus.canceled:
        return StatusRecord(
            state=OperationState.error,
            progress=progress,
            error_message="Workflow execution was canceled",
        )
    if execution.status in (ExecutionStatus.error, ExecutionStatus.crashed):
        return StatusRecord(
            state=OperationState.error,
            progress=progress,
            error_message="Workflow execution failed",
            details=execution.data,
        )
    return StatusRecord(state=OperationState.running, progress=progress)


class ExecutionStatusFetcher(StatusFetcher):
    """Checks status by looking up the execution resource through the authenticated REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
    ):
        if not api_key:
            raise WorkflowError(
                "An API key is required to look up executions",
                kind=ErrorKind.missing_wiring,
            )
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.headers = {API_KEY_HEADER: api_key, "Accept": "application/json"}
        self.timeout = timeout
        self.logger = logger

    async def get_execution(self, execution_id: str) -> Execution:
        url = f"{self.base_url}/api/v1/executions/{quote(execution_id, safe='')}"
        try:
            async with self.session.get(
                url,
                headers=self.headers,
                params={"includeData": "true"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    raise await self._error_for(response, execution_id)
                try:
                    body = await response.json(content_type=None)
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    raise WorkflowError(
                        f"Execution lookup for {execution_id} returned invalid JSON: {e}",
                        kind=ErrorKind.invalid_response,
                        operation_id=execution_id,
                        status_code=response.status,
                    ) from e
        except asyncio.TimeoutError as e:
            raise WorkflowError(
                f"Execution lookup timed out after {self.timeout}s",
                kind=ErrorKind.request_timeout,
                operation_id=execution_id,
            ) from e
        except aiohttp.ClientError as e:
            raise WorkflowError(
                f"Network request failed: {e}",
                kind=ErrorKind.network,
                operation_id=execution_id,
            ) from e

        try:
            return Execution.model_validate(body)
        except ValidationError as e:
            raise WorkflowError(
                f"Malformed execution resource for {execution_id}",
                kind=ErrorKind.invalid_response,
                operation_id=execution_id,
                details={"errors": e.errors(include_url=False)},
            ) from e

    async def _error_for(self, response: aiohttp.ClientResponse, execution_id: str) -> WorkflowError:
        kind = kind_for_status(response.status)
        if kind == ErrorKind.not_found:
            message = f"Execution {execution_id} not found"
        elif kind == ErrorKind.auth_error:
            message = "Invalid or missing API key"
        else:
            error = await error_from_response(response)
            error.operation_id = execution_id
            self.logger.error(f"HTTP error {response.status} looking up {execution_id}: {error.message}")
            return error
        self.logger.error(f"HTTP error {response.status} looking up {execution_id}: {message}")
        return WorkflowError(
            message, kind=kind, operation_id=execution_id, status_code=response.status
        )

    async def fetch(self, handle: OperationHandle) -> StatusRecord:
        execution = await self.get_execution(handle.id)
        self.logger.debug(
            f"Execution {execution.id} is {execution.status.value} (finished={execution.finished})"
        )
        return execution_to_status(execution)
