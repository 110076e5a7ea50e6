"""
Watermark Pipeline Backend — Abstract Remote Watermark Service Interface
==========================================================================

What:  Contract for the external service that embeds and extracts watermarks.
How:   WatermarkServiceClient implements it over signed HTTPS; tests inject
       a fake implementation.
Who:   WatermarkPipeline (task creation) and TaskWorkerPool (status polling).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


# Remote task states as reported by the service, plus 'unknown' for bodies
# that could not be parsed. Only 'finished' and 'failed' are terminal.
REMOTE_PENDING = "pending"
REMOTE_PROCESSING = "processing"
REMOTE_FINISHED = "finished"
REMOTE_FAILED = "failed"
REMOTE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class RemoteTaskStatus:
    """
    Snapshot of a remote task.

    result_data: download URL of the watermarked file (embed) or the
                 extracted text (extract); present when status is 'finished'.
    message:     remote diagnostic, used as error text on failure.
    """
    status: str
    result_data: Optional[str] = None
    message: Optional[str] = None
    body: Any = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (REMOTE_FINISHED, REMOTE_FAILED)


class WatermarkRemote(ABC):
    """
    Interface to the remote watermark service.

    Contract:
        - create_* return the remote task id or raise RemoteServiceError
        - query_task never raises for an unparsable body: it reports 'unknown'
        - implementations own their retry and circuit-breaker behaviour
    """

    @abstractmethod
    async def create_embed_task(
        self, file_url: str, content: str, biz_id: Optional[str] = None
    ) -> str:
        """Submit a file for watermark embedding. Returns the remote task id."""
        ...

    @abstractmethod
    async def create_extract_task(self, file_url: str, biz_id: Optional[str] = None) -> str:
        """Submit a file for watermark extraction. Returns the remote task id."""
        ...

    @abstractmethod
    async def query_task(self, task_id: str) -> RemoteTaskStatus:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the service is reachable; never raises."""
        ...

    async def close(self) -> None:
        """Release network resources. No-op by default."""
        return None
