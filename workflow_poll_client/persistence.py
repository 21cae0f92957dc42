import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from loguru import logger
from pydantic import ValidationError
from workflow_poll_client.models import OperationHandle, OperationState, PersistedHandle


class HandleStore(ABC):
    """Durable storage for the handle of an operation that is being polled.

    A handle is saved when polling starts and cleared once the operation is
    done, so that tracking can be resumed after a restart.
    """

    @abstractmethod
    def save(self, handle: OperationHandle) -> None:
        ...

    @abstractmethod
    def load(self) -> Optional[PersistedHandle]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryHandleStore(HandleStore):
    def __init__(self):
        self._record: Optional[PersistedHandle] = None

    def save(self, handle: OperationHandle) -> None:
        self._record = PersistedHandle(
            handle=handle, state=OperationState.running, timestamp=time.time()
        )

    def load(self) -> Optional[PersistedHandle]:
        return self._record

    def clear(self) -> None:
        self._record = None


class FileHandleStore(HandleStore):
    """Keeps the persisted handle as a JSON document on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = logger

    def save(self, handle: OperationHandle) -> None:
        record = PersistedHandle(
            handle=handle, state=OperationState.running, timestamp=time.time()
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(record.model_dump_json())
        self.logger.debug(f"Persisted handle for operation {handle.id} to {self.path}")

    def load(self) -> Optional[PersistedHandle]:
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning(f"Could not read persisted handle at {self.path}: {e}")
            return None

        try:
            return PersistedHandle.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning(f"Ignoring corrupt persisted handle at {self.path}: {e}")
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
