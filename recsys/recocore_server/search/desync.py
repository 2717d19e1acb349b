"""Record of index documents that could not be brought in line with the graph."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from ..errors import PermanentDesyncError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesyncRecord:
    entity_id: str
    version: int
    attempts: int
    error: str
    recorded_at: int


class DesyncLog:
    """Entities awaiting the reconciliation sweep.

    Only the newest record per entity is kept. The reconcile-index job reads
    pending() and calls resolve() for entities it has rewritten.
    """

    def __init__(self) -> None:
        self._records: dict[str, DesyncRecord] = {}

    def record(self, error: PermanentDesyncError) -> DesyncRecord:
        entry = DesyncRecord(
            entity_id=error.entity_id,
            version=error.version,
            attempts=error.attempts,
            error=error.details.get("cause") or error.message,
            recorded_at=int(time.time() * 1000),
        )
        previous = self._records.get(error.entity_id)
        if previous is None or previous.version <= entry.version:
            self._records[error.entity_id] = entry
        logger.error(
            error.message,
            extra={"code": error.code, "entity_id": error.entity_id, "version": error.version},
        )
        return entry

    def pending(self) -> list[DesyncRecord]:
        return sorted(self._records.values(), key=lambda r: r.entity_id)

    def resolve(self, entity_id: str) -> None:
        self._records.pop(entity_id, None)

    def __len__(self) -> int:
        return len(self._records)
