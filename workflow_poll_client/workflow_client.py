import asyncio
from typing import Any, Callable, Dict, Optional

import aiohttp
from loguru import logger
from workflow_poll_client.cancellation import CancellationToken
from workflow_poll_client.errors import ErrorKind, WorkflowError
from workflow_poll_client.invoker import Invoker
from workflow_poll_client.models import (
    EXECUTION_POLLING_DEFAULTS,
    Immediate,
    OperationHandle,
    PollingConfig,
    PollResult,
)
from workflow_poll_client.persistence import HandleStore
from workflow_poll_client.poller import Poller
from workflow_poll_client.settings import ClientSettings
from workflow_poll_client.status import EndpointStatusFetcher, ExecutionStatusFetcher

# Outcomes after which a stored handle has nothing left to resume
_CLEARING_KINDS = (ErrorKind.remote_error,)


class WorkflowClient:
    def __init__(
        self,
        base_url: str,
        config: Optional[PollingConfig] = None,
        api_key: Optional[str] = None,
        webhook_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        request_timeout: float = 30.0,
        store: Optional[HandleStore] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or PollingConfig()
        self.api_key = api_key
        self.headers = dict(headers or {})
        if webhook_token:
            self.headers["Authorization"] = f"Bearer {webhook_token}"
        self.request_timeout = request_timeout
        self.store = store
        self.on_progress = on_progress
        self.logger = logger

    @classmethod
    def from_settings(
        cls, settings: Optional[ClientSettings] = None, **kwargs: Any
    ) -> "WorkflowClient":
        settings = settings or ClientSettings()
        kwargs.setdefault("config", settings.polling_config())
        kwargs.setdefault("api_key", settings.api_key)
        kwargs.setdefault("webhook_token", settings.webhook_token)
        kwargs.setdefault("request_timeout", settings.request_timeout)
        return cls(settings.base_url, **kwargs)

    def _invoker(self, session: aiohttp.ClientSession) -> Invoker:
        return Invoker(session, self.base_url, headers=self.headers, timeout=self.request_timeout)

    def _resolve_handle(self, handle: OperationHandle) -> OperationHandle:
        if handle.status_location:
            return handle
        if self.config.status_endpoint:
            return OperationHandle(id=handle.id, status_location=self.config.status_endpoint)
        raise WorkflowError(
            "Workflow returned an executionId but no statusEndpoint. Either set "
            "status_endpoint in the polling config or have the workflow return it.",
            kind=ErrorKind.missing_wiring,
            operation_id=handle.id,
        )

    async def _track(
        self,
        poller: Poller,
        handle: OperationHandle,
        resume: bool = False,
    ) -> PollResult:
        """Runs the poller and keeps the stored handle in line with the outcome"""
        try:
            if resume:
                result = await poller.resume(handle)
            else:
                result = await poller.start(handle)
        except WorkflowError as e:
            if self.store is not None and e.kind in _CLEARING_KINDS:
                self.store.clear()
            elif self.store is not None:
                self.logger.info(f"Keeping stored handle for {handle.id} after {e.kind.value}")
            raise

        if self.store is not None:
            self.store.clear()
        return result

    async def execute(
        self, path: str, data: Any = None, files: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Calls a webhook once and returns its response without any polling"""
        async with aiohttp.ClientSession() as session:
            return await self._invoker(session).request(path, data=data, files=files)

    async def execute_with_polling(
        self,
        path: str,
        data: Any = None,
        files: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PollResult:
        """Calls a webhook and, if it reports a running operation, polls its status endpoint until done"""
        start_time = asyncio.get_running_loop().time()

        async with aiohttp.ClientSession() as session:
            invoker = self._invoker(session)
            invocation = await invoker.invoke(path, data=data, files=files)

            if isinstance(invocation, Immediate):
                return PollResult(
                    result=invocation.result,
                    attempts=0,
                    elapsed_time=asyncio.get_running_loop().time() - start_time,
                )

            handle = self._resolve_handle(invocation.handle)
            if self.store is not None:
                self.store.save(handle)

            poller = Poller(
                EndpointStatusFetcher(invoker),
                self.config,
                cancel_token=cancel_token,
                on_progress=self.on_progress,
            )
            return await self._track(poller, handle)

    async def resume_polling(
        self,
        handle: Optional[OperationHandle] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PollResult:
        """Continues polling an operation started earlier, by handle or from the store"""
        handle = self._resolve_handle(self._stored_handle(handle))

        async with aiohttp.ClientSession() as session:
            poller = Poller(
                EndpointStatusFetcher(self._invoker(session)),
                self.config,
                cancel_token=cancel_token,
                on_progress=self.on_progress,
            )
            return await self._track(poller, handle, resume=True)

    async def resume_execution_polling(
        self,
        handle: Optional[OperationHandle] = None,
        cancel_token: Optional[CancellationToken] = None,
        config: Optional[PollingConfig] = None,
    ) -> PollResult:
        """Continues polling an execution started by execute_and_poll"""
        handle = self._stored_handle(handle)

        async with aiohttp.ClientSession() as session:
            fetcher = ExecutionStatusFetcher(
                session, self.base_url, self.api_key, timeout=self.request_timeout
            )
            poller = Poller(
                fetcher,
                config or EXECUTION_POLLING_DEFAULTS,
                cancel_token=cancel_token,
                on_progress=self.on_progress,
            )
            return await self._track(poller, handle, resume=True)

    def _stored_handle(self, handle: Optional[OperationHandle]) -> OperationHandle:
        if handle is None and self.store is not None:
            persisted = self.store.load()
            handle = persisted.handle if persisted is not None else None
        if handle is None:
            raise WorkflowError("No operation handle to resume", kind=ErrorKind.missing_wiring)
        return handle

    async def execute_and_poll(
        self,
        path: str,
        data: Any = None,
        files: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        config: Optional[PollingConfig] = None,
    ) -> PollResult:
        """Calls a webhook that answers with an executionId and polls the execution resource API"""
        async with aiohttp.ClientSession() as session:
            fetcher = ExecutionStatusFetcher(
                session, self.base_url, self.api_key, timeout=self.request_timeout
            )
            response = await self._invoker(session).request(path, data=data, files=files)

            execution_id = response.get("executionId") if isinstance(response, dict) else None
            if not execution_id:
                raise WorkflowError(
                    "Webhook response must include executionId. Configure the webhook to "
                    'respond immediately with {"executionId": "{{ $execution.id }}"}',
                    kind=ErrorKind.validation_error,
                )

            handle = OperationHandle(id=str(execution_id))
            if self.store is not None:
                self.store.save(handle)

            poller = Poller(
                fetcher,
                config or EXECUTION_POLLING_DEFAULTS,
                cancel_token=cancel_token,
                on_progress=self.on_progress,
            )
            return await self._track(poller, handle)
