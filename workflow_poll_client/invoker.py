import asyncio
import json
import re
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger
from workflow_poll_client.errors import ErrorKind, WorkflowError, kind_for_status
from workflow_poll_client.models import (
    BinaryResponse,
    Immediate,
    Invocation,
    OperationHandle,
    OperationState,
    Pending,
    StatusRecord,
)

BINARY_CONTENT_TYPES = (
    "application/octet-stream",
    "application/pdf",
    "image/",
    "audio/",
    "video/",
    "application/zip",
    "application/gzip",
)

_FILENAME_PATTERN = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)")


def usable_progress(value: Any, operation_id: str) -> Optional[float]:
    """Returns a reported progress fraction, or None when it is missing, not a number or outside 0..1."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    if not 0.0 <= value <= 1.0:
        logger.warning(f"Ignoring out of range progress {value} for {operation_id}")
        return None
    return value


def classify_response(body: Any) -> Invocation:
    """Decides whether an initial webhook response is a final result or the start of a remote operation."""
    if (
        isinstance(body, dict)
        and body.get("executionId")
        and body.get("status") == OperationState.running.value
    ):
        location = body.get("statusEndpoint")
        handle = OperationHandle(
            id=str(body["executionId"]),
            status_location=location if isinstance(location, str) and location else None,
        )
        return Pending(
            handle=handle,
            status=StatusRecord(
                state=OperationState.running,
                progress=usable_progress(body.get("progress"), handle.id),
            ),
        )
    return Immediate(result=body)


def extract_filename(content_disposition: Optional[str]) -> Optional[str]:
    if not content_disposition:
        return None
    match = _FILENAME_PATTERN.search(content_disposition)
    if not match:
        return None
    return match.group(1).replace('"', "").replace("'", "") or None


def is_binary_content_type(content_type: str) -> bool:
    return any(binary in content_type for binary in BINARY_CONTENT_TYPES)


async def error_from_response(response: aiohttp.ClientResponse) -> WorkflowError:
    """Builds a WorkflowError from a failed HTTP response, using its JSON body when there is one."""
    status_code = response.status
    message = f"Request failed with status {status_code}"
    details = None
    operation_id = None
    node_name = None

    try:
        body = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, json.JSONDecodeError, UnicodeDecodeError):
        body = None

    if isinstance(body, dict):
        if isinstance(body.get("message"), str):
            message = body["message"]
        if isinstance(body.get("executionId"), str):
            operation_id = body["executionId"]
        if isinstance(body.get("nodeName"), str):
            node_name = body["nodeName"]
        details = body

    return WorkflowError(
        message,
        kind=kind_for_status(status_code),
        operation_id=operation_id,
        status_code=status_code,
        details=details,
        node_name=node_name,
    )


class Invoker:
    """Issues single webhook requests against a workflow server. Never retries."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.logger = logger

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _build_form(self, data: Any, files: Dict[str, Any]) -> aiohttp.FormData:
        form = aiohttp.FormData(default_to_multipart=True)
        if data is not None:
            form.add_field("data", json.dumps(data), content_type="application/json")

        for field_name, file_obj in files.items():
            if file_obj is None:
                continue
            if isinstance(file_obj, tuple):
                filename, content, content_type = file_obj
            else:
                filename = getattr(file_obj, "name", field_name)
                content = file_obj
                content_type = "application/octet-stream"
            form.add_field(
                field_name, content, filename=str(filename), content_type=content_type
            )
        return form

    async def _parse_response(self, response: aiohttp.ClientResponse) -> Any:
        content_type = response.headers.get("Content-Type", "")

        if is_binary_content_type(content_type):
            return BinaryResponse(
                content=await response.read(),
                content_type=content_type,
                filename=extract_filename(response.headers.get("Content-Disposition")),
            )

        if "application/json" in content_type:
            try:
                return await response.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise WorkflowError(
                    f"Response from {response.url} is not valid JSON: {e}",
                    kind=ErrorKind.invalid_response,
                    status_code=response.status,
                ) from e

        return await response.text()

    async def request(
        self,
        path: str,
        data: Any = None,
        files: Optional[Dict[str, Any]] = None,
        method: str = "POST",
    ) -> Any:
        """Performs exactly one HTTP call and returns the decoded body"""
        url = self.build_url(path)
        kwargs: Dict[str, Any] = {
            "headers": dict(self.headers),
            "timeout": aiohttp.ClientTimeout(total=self.timeout),
        }
        if files:
            kwargs["data"] = self._build_form(data, files)
        elif data is not None:
            kwargs["json"] = data

        try:
            async with self.session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    error = await error_from_response(response)
                    self.logger.error(f"HTTP error {response.status} at {url}: {error.message}")
                    raise error
                return await self._parse_response(response)
        except asyncio.TimeoutError as e:
            raise WorkflowError(
                f"Request timed out after {self.timeout}s",
                kind=ErrorKind.request_timeout,
                details={"timeout": self.timeout, "url": url},
            ) from e
        except aiohttp.ClientError as e:
            raise WorkflowError(
                f"Network request failed: {e}",
                kind=ErrorKind.network,
                details={"original_error": repr(e), "url": url},
            ) from e

    async def invoke(
        self,
        path: str,
        data: Any = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Invocation:
        """Starts a workflow and reports whether it answered immediately or is still running"""
        body = await self.request(path, data=data, files=files)
        invocation = classify_response(body)
        if isinstance(invocation, Pending):
            self.logger.info(
                f"Operation {invocation.handle.id} is running remotely, polling required"
            )
        return invocation
