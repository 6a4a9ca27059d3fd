"""Batches: assembly, the wire envelope and the apply-side processor.

BatchAssembler and BatchProcessor live in batches.assembler and
batches.processor.
"""

from .envelope import (
    CURRENT_SCHEMA_VERSION,
    BatchEnvelope,
    RecordEnvelope,
    parse_envelope,
)
from .history import BatchHistory
from .models import SyncBatch, SyncPoint, SyncRecord
from .schemas import BatchResult, RecordResult, SyncBatchResponse

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "BatchEnvelope",
    "RecordEnvelope",
    "parse_envelope",
    "BatchHistory",
    "SyncBatch",
    "SyncPoint",
    "SyncRecord",
    "BatchResult",
    "RecordResult",
    "SyncBatchResponse",
]
