"""Typed wire envelope for batches.

A batch travels as a BatchEnvelope carrying RecordEnvelopes. Parsing
validates the schema version and record shape before any record is
applied, so malformed input fails as a permanent error up front.
"""

import json
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..db.schemas import SyncDirection, SyncOperation
from ..errors import PayloadValidationError, SchemaMismatchError
from ..timeutils import as_utc

CURRENT_SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({CURRENT_SCHEMA_VERSION})


class RecordEnvelope(BaseModel):
    """One entity mutation on the wire. The payload is opaque to the engine."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    record_uid: str = Field(..., min_length=1, max_length=36)
    entity_type: str = Field(..., min_length=1, max_length=100)
    entity_id: str = Field(..., min_length=1, max_length=100)
    operation: SyncOperation
    timestamp: datetime
    payload: Optional[dict[str, Any]] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("entity_id", mode="before")
    @classmethod
    def stringify_entity_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class BatchEnvelope(BaseModel):
    """A batch on the wire for one (store, direction, entity type)."""

    schema_version: int = CURRENT_SCHEMA_VERSION
    batch_uid: str = Field(..., min_length=1, max_length=36)
    store_id: int
    direction: SyncDirection
    entity_type: str = Field(..., min_length=1, max_length=100)
    created_at: datetime
    records: list[RecordEnvelope] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return as_utc(v)

    def to_json(self) -> str:
        return self.model_dump_json()


def parse_envelope(raw: Union[str, bytes, dict[str, Any], BatchEnvelope]) -> BatchEnvelope:
    """Validate raw batch data into a BatchEnvelope.

    Args:
        raw: JSON text, decoded dict, or an envelope to re-check

    Returns:
        Validated envelope

    Raises:
        SchemaMismatchError: If the batch or any record has an unsupported version
        PayloadValidationError: If the data is not a well-formed batch
    """
    if isinstance(raw, BatchEnvelope):
        data: Any = raw.model_dump()
    elif isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PayloadValidationError(f"Batch is not valid JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise PayloadValidationError("Batch must be a JSON object")

    version = data.get("schema_version")
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        raise SchemaMismatchError(version, CURRENT_SCHEMA_VERSION)
    for record in data.get("records") or []:
        if isinstance(record, dict):
            record_version = record.get("schema_version", CURRENT_SCHEMA_VERSION)
            if record_version not in SUPPORTED_SCHEMA_VERSIONS:
                raise SchemaMismatchError(record_version, CURRENT_SCHEMA_VERSION)

    try:
        envelope = BatchEnvelope.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(f"Malformed batch: {e}") from e

    uids = [r.record_uid for r in envelope.records]
    if len(uids) != len(set(uids)):
        raise PayloadValidationError(f"Batch {envelope.batch_uid} repeats a record uid")

    mismatched = [r.record_uid for r in envelope.records if r.entity_type != envelope.entity_type]
    if mismatched:
        raise PayloadValidationError(
            f"Records {mismatched} do not match batch entity type {envelope.entity_type!r}"
        )
    return envelope
