"""
Dead-letter sinks for poison events.

A poison event is one whose payload fails validation. It is handed to a
sink together with the validation errors and then committed, so it never
blocks its partition.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Protocol

from ..errors import EventValidationError
from ..stream.base import EventStream, StreamRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeadLetter:
    """A poison event and why it was rejected."""

    source: str
    key: str
    value: bytes
    event_id: str | None
    errors: list[str] = field(default_factory=list)


class DeadLetterSink(Protocol):
    async def send(self, record: StreamRecord, error: EventValidationError) -> None: ...


def _dead_letter(record: StreamRecord, error: EventValidationError) -> DeadLetter:
    return DeadLetter(
        source=str(record.position),
        key=record.key,
        value=record.value,
        event_id=error.event_id,
        errors=error.errors or [error.message],
    )


class StreamDeadLetterSink:
    """Forward poison events to a dead-letter topic on the event stream."""

    def __init__(self, stream: EventStream, topic: str) -> None:
        self.stream = stream
        self.topic = topic

    async def send(self, record: StreamRecord, error: EventValidationError) -> None:
        letter = _dead_letter(record, error)
        await self.stream.append(
            self.topic,
            record.key,
            record.value,
            headers={
                "source": letter.source.encode("utf-8"),
                "errors": json.dumps(letter.errors).encode("utf-8"),
            },
        )
        logger.warning(
            "Dead-lettered poison event",
            extra={"source": letter.source, "event_id": letter.event_id, "dead_letter_topic": self.topic},
        )


class InMemoryDeadLetterSink:
    """Keeps poison events in a list (testing helper)."""

    def __init__(self) -> None:
        self.letters: list[DeadLetter] = []

    async def send(self, record: StreamRecord, error: EventValidationError) -> None:
        self.letters.append(_dead_letter(record, error))
