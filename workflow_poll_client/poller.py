import asyncio
import inspect
from typing import Any, Callable, Optional

import aiohttp
from loguru import logger
from workflow_poll_client.backoff import next_delay
from workflow_poll_client.cancellation import CancellationToken
from workflow_poll_client.errors import ErrorKind, WorkflowError, polling_error
from workflow_poll_client.models import (
    OperationHandle,
    OperationState,
    PollingConfig,
    PollResult,
    PollSession,
    PollState,
    StatusRecord,
)
from workflow_poll_client.status import StatusFetcher

_STATE_FOR_KIND = {
    ErrorKind.cancelled: PollState.cancelled,
    ErrorKind.timeout: PollState.timed_out,
    ErrorKind.attempts_exceeded: PollState.attempts_exceeded,
}


class Poller:
    """Tracks one remote operation to a terminal state.

    Each cycle checks cancellation, the timeout and the attempt cap, waits
    according to the backoff policy, then performs one status fetch. Fetches
    for a session are strictly sequential and none happen after the session
    reaches a terminal state.
    """

    def __init__(
        self,
        fetcher: StatusFetcher,
        config: Optional[PollingConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
    ):
        self.fetcher = fetcher
        self.config = config or PollingConfig()
        self.cancel_token = cancel_token or CancellationToken()
        self.on_progress = on_progress
        self.logger = logger
        self.session: Optional[PollSession] = None

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _new_session(self, handle: OperationHandle, state: PollState) -> PollSession:
        self.session = PollSession(
            handle=handle, config=self.config, started_at=self._now(), state=state
        )
        return self.session

    async def start(self, handle: OperationHandle) -> PollResult:
        """Polls an operation the invoker just reported as running"""
        session = self._new_session(handle, PollState.initiated)
        self.logger.info(f"Started polling operation {handle.id}")
        return await self._poll(session)

    async def resume(self, handle: OperationHandle) -> PollResult:
        """Polls a previously stored operation. Attempts and the timeout window start over."""
        session = self._new_session(handle, PollState.waiting)
        self.logger.info(f"Resumed polling operation {handle.id}")
        return await self._poll(session)

    def _check_bounds(self, session: PollSession) -> None:
        """Raises if the session must stop before consuming another wait"""
        operation_id = session.handle.id

        if self.cancel_token.cancelled:
            raise polling_error("Polling was cancelled", ErrorKind.cancelled, operation_id)

        elapsed = self._now() - session.started_at
        upcoming = next_delay(session.attempt + 1, self.config)
        if elapsed >= self.config.timeout or elapsed + upcoming > self.config.timeout:
            raise polling_error(
                f"Polling timed out after {self.config.timeout}s",
                ErrorKind.timeout,
                operation_id,
            )

        max_attempts = self.config.max_attempts
        if max_attempts is not None and session.attempt >= max_attempts:
            raise polling_error(
                f"Polling exceeded max attempts ({max_attempts})",
                ErrorKind.attempts_exceeded,
                operation_id,
            )

    async def _wait_before_fetch(self, session: PollSession) -> None:
        delay = next_delay(session.attempt, self.config)
        self.logger.debug(
            f"Operation {session.handle.id} still running, waiting {delay:.2f}s before attempt {session.attempt}"
        )
        session.state = PollState.waiting
        if await self.cancel_token.sleep(delay):
            raise polling_error(
                "Polling was cancelled", ErrorKind.cancelled, session.handle.id
            )

    async def _report_progress(self, record: StatusRecord) -> None:
        if record.progress is None or self.on_progress is None:
            return
        outcome = self.on_progress(record.progress)
        if inspect.isawaitable(outcome):
            await outcome

    async def _fetch_once(self, session: PollSession) -> Optional[StatusRecord]:
        """Returns None when the fetch failed transiently and the cycle should be retried"""
        session.state = PollState.fetching
        try:
            return await self.fetcher.fetch(session.handle)
        except WorkflowError as e:
            if not e.transient:
                raise
            self.logger.warning(
                f"Polling attempt {session.attempt} for {session.handle.id} failed: {e.message}"
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(
                f"Polling attempt {session.attempt} for {session.handle.id} failed: {e!r}"
            )
        return None

    async def _poll(self, session: PollSession) -> PollResult:
        operation_id = session.handle.id
        try:
            while True:
                self._check_bounds(session)

                session.attempt += 1
                await self._wait_before_fetch(session)

                record = await self._fetch_once(session)
                if record is None:
                    continue

                if self.cancel_token.cancelled:
                    raise polling_error("Polling was cancelled", ErrorKind.cancelled, operation_id)

                await self._report_progress(record)

                if record.state == OperationState.complete:
                    session.state = PollState.completed
                    elapsed = self._now() - session.started_at
                    self.logger.info(
                        f"Operation {operation_id} completed after {session.attempt} attempts ({elapsed:.2f}s)"
                    )
                    return PollResult(
                        result=record.result,
                        attempts=session.attempt,
                        elapsed_time=elapsed,
                        handle=session.handle,
                    )

                if record.state == OperationState.error:
                    raise WorkflowError(
                        record.error_message or "Workflow failed",
                        kind=ErrorKind.remote_error,
                        operation_id=operation_id,
                        details=record.details,
                    )
        except WorkflowError as e:
            if e.operation_id is None:
                e.operation_id = operation_id
            session.state = _STATE_FOR_KIND.get(e.kind, PollState.failed)
            session.cancelled = e.kind == ErrorKind.cancelled
            self.logger.info(f"Polling operation {operation_id} ended {session.state.value}: {e.message}")
            raise
