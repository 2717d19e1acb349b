"""
Interaction event model.

Events are produced upstream and consumed exactly once (in effect) by the
ingestion consumer. On the wire an event is a JSON object:

    {
        "eventId": "e1",
        "partitionKey": "u42",
        "mutationType": "addRelationship",
        "payload": {"src": "u42", "dst": "item7", "type": "viewed", "weight": 1},
        "arrivalTsMs": 1730000000000
    }

Payload shapes per mutation type:
    upsertEntity:    {"type": str, "id": str, "attrs": {str: scalar}}
    addRelationship: {"src": str, "dst": str, "type": str, "weight": number,
                      "srcType": str (optional), "dstType": str (optional)}
    tombstoneEntity: {"id": str}

Invariants:
    - Validation never touches any store
    - A payload that fails validation is a poison event, never retried
    - arrival_ts_ms, not the local clock, stamps graph mutations
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import EventValidationError
from .stream.base import StreamRecord

SCALAR_TYPES = (str, int, float, bool, type(None))


class MutationType(str, Enum):
    """Graph mutation carried by an event."""

    UPSERT_ENTITY = "upsertEntity"
    ADD_RELATIONSHIP = "addRelationship"
    TOMBSTONE_ENTITY = "tombstoneEntity"


@dataclass(frozen=True)
class Event:
    """An immutable interaction event.

    Attributes:
        event_id: Globally unique event identifier
        partition_key: Ordering key
        mutation_type: Kind of graph mutation
        payload: Mutation arguments
        arrival_ts_ms: Arrival timestamp (Unix ms)
    """

    event_id: str
    partition_key: str
    mutation_type: MutationType
    payload: dict[str, Any] = field(default_factory=dict)
    arrival_ts_ms: int = 0

    @classmethod
    def from_dict(cls, data: Any, default_ts_ms: int = 0) -> Event:
        """Validate and build an event from its wire dictionary.

        Raises:
            EventValidationError: If the event is malformed
        """
        if not isinstance(data, dict):
            raise EventValidationError("Event must be a JSON object")

        event_id = data.get("eventId")
        errors: list[str] = []
        if not isinstance(event_id, str) or not event_id:
            errors.append("eventId must be a non-empty string")
        partition_key = data.get("partitionKey")
        if not isinstance(partition_key, str) or not partition_key:
            errors.append("partitionKey must be a non-empty string")

        mutation_type = None
        try:
            mutation_type = MutationType(data.get("mutationType"))
        except ValueError:
            errors.append(f"unknown mutationType: {data.get('mutationType')!r}")

        payload = data.get("payload")
        if not isinstance(payload, dict):
            errors.append("payload must be an object")
        elif mutation_type is not None:
            errors.extend(_validate_payload(mutation_type, payload))

        arrival = data.get("arrivalTsMs", default_ts_ms)
        if not isinstance(arrival, int) or isinstance(arrival, bool) or arrival < 0:
            errors.append("arrivalTsMs must be a non-negative integer")

        if errors:
            raise EventValidationError(
                f"Invalid event: {'; '.join(errors)}",
                event_id=event_id if isinstance(event_id, str) else None,
                errors=errors,
            )

        return cls(
            event_id=event_id,
            partition_key=partition_key,
            mutation_type=mutation_type,
            payload=payload,
            arrival_ts_ms=arrival,
        )

    @classmethod
    def from_record(cls, record: StreamRecord) -> Event:
        """Decode and validate a stream record.

        Raises:
            EventValidationError: If the record is not a valid event
        """
        try:
            data = json.loads(record.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventValidationError(f"Event is not valid JSON: {e}") from e
        return cls.from_dict(data, default_ts_ms=record.position.timestamp_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "partitionKey": self.partition_key,
            "mutationType": self.mutation_type.value,
            "payload": self.payload,
            "arrivalTsMs": self.arrival_ts_ms,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")


def _is_id(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _validate_payload(mutation_type: MutationType, payload: dict[str, Any]) -> list[str]:
    errors = []
    if mutation_type == MutationType.UPSERT_ENTITY:
        if not _is_id(payload.get("id")):
            errors.append("payload.id must be a non-empty string")
        if not _is_id(payload.get("type")):
            errors.append("payload.type must be a non-empty string")
        attrs = payload.get("attrs", {})
        if not isinstance(attrs, dict):
            errors.append("payload.attrs must be an object")
        else:
            for key, value in attrs.items():
                if not isinstance(value, SCALAR_TYPES):
                    errors.append(f"payload.attrs.{key} must be a scalar")

    elif mutation_type == MutationType.ADD_RELATIONSHIP:
        for name in ("src", "dst", "type"):
            if not _is_id(payload.get(name)):
                errors.append(f"payload.{name} must be a non-empty string")
        weight = payload.get("weight", 1.0)
        if not isinstance(weight, (int, float)) or isinstance(weight, bool):
            errors.append("payload.weight must be a number")
        elif not math.isfinite(weight):
            errors.append("payload.weight must be finite")
        for name in ("srcType", "dstType"):
            if name in payload and not _is_id(payload[name]):
                errors.append(f"payload.{name} must be a non-empty string")

    elif mutation_type == MutationType.TOMBSTONE_ENTITY:
        if not _is_id(payload.get("id")):
            errors.append("payload.id must be a non-empty string")

    return errors
