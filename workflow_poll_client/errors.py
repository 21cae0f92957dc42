from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    network = "network"
    request_timeout = "request_timeout"
    server_error = "server_error"
    auth_error = "auth_error"
    not_found = "not_found"
    validation_error = "validation_error"
    http_error = "http_error"
    invalid_response = "invalid_response"
    remote_error = "remote_error"
    missing_wiring = "missing_wiring"
    timeout = "timeout"
    attempts_exceeded = "attempts_exceeded"
    cancelled = "cancelled"
    unknown = "unknown"


# Failures that a polling loop retries on its next cycle
TRANSIENT_KINDS = frozenset(
    {ErrorKind.network, ErrorKind.request_timeout, ErrorKind.server_error}
)

# Fatal outcomes where the remote operation may still finish, so a retry is worth offering
RETRYABLE_KINDS = frozenset({ErrorKind.timeout, ErrorKind.attempts_exceeded})


class WorkflowError(Exception):
    """Raised for every fatal outcome of invoking or tracking a remote operation.

    Callers branch on ``kind``: ``retryable`` errors (timeout, attempts exceeded)
    can be offered a retry, ``remote_error`` is a terminal failure reported by
    the workflow, and ``cancelled`` was requested by the caller.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.unknown,
        operation_id: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
        node_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.operation_id = operation_id
        self.status_code = status_code
        self.details = details
        self.node_name = node_name

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "operation_id": self.operation_id,
            "status_code": self.status_code,
            "details": self.details,
            "node_name": self.node_name,
        }

    def __repr__(self) -> str:
        return (
            f"WorkflowError({self.message!r}, kind={self.kind.value}, "
            f"operation_id={self.operation_id!r})"
        )


def kind_for_status(status_code: int) -> ErrorKind:
    """Maps an HTTP status code to the error kind it represents."""
    if status_code in (401, 403):
        return ErrorKind.auth_error
    if status_code == 404:
        return ErrorKind.not_found
    if status_code == 408:
        return ErrorKind.request_timeout
    if status_code == 422:
        return ErrorKind.validation_error
    if status_code >= 500:
        return ErrorKind.server_error
    if status_code >= 400:
        return ErrorKind.http_error
    return ErrorKind.unknown


def polling_error(
    message: str, kind: ErrorKind, operation_id: Optional[str] = None
) -> WorkflowError:
    return WorkflowError(message, kind=kind, operation_id=operation_id)
