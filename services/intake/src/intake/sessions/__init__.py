"""Upload sessions and the pending upload queue."""

from .manager import DEFAULT_TTL, UploadSessionManager
from .queue import PendingUploadQueue, dump_result

__all__ = ["DEFAULT_TTL", "PendingUploadQueue", "UploadSessionManager", "dump_result"]
