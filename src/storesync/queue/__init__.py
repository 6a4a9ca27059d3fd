"""Change queue.

Local mutations wait here, ordered by priority then enqueue time, until
the batch assembler claims them. ChangeQueue lives in queue.manager.
"""

from .models import SyncQueueItem
from .schemas import QueueItemResponse, QueueSummary

__all__ = ["SyncQueueItem", "QueueItemResponse", "QueueSummary"]
