"""
Progress event channel for one invocation.

Stages push events through typed helpers; the HTTP layer drains the channel
as Server-Sent Events. Emission never raises and the channel accepts a single
terminal event (``final_complete``, ``error`` or a checkpoint ``stage_data``),
after which everything else is dropped.
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from ..observability.logging import get_logger

logger = get_logger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

_CLOSED = object()


class EventType(str, Enum):
    CLASSIFICATION = "classification"
    MODE_SELECTED = "mode_selected"
    LAYER_START = "layer_start"
    LAYER_CHUNK = "layer_chunk"
    LAYER_ARTIFACT = "layer_artifact"
    LAYER_COMPLETE = "layer_complete"
    PARALLEL_START = "parallel_start"
    ESCALATION = "escalation"
    STAGE_DATA = "stage_data"
    FINAL_START = "final_start"
    FINAL_CHUNK = "final_chunk"
    FINAL_COMPLETE = "final_complete"
    ERROR = "error"


def sse_frame(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


class EventChannel:
    """Single-consumer event queue with a one-terminal-event rule."""

    def __init__(self, keepalive_interval: float = 10.0, clock: Callable[[], float] = time.time):
        self.keepalive_interval = keepalive_interval
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_ts = 0
        self._closed = False
        self._terminated = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminated(self) -> bool:
        return self._terminated

    def _timestamp(self) -> int:
        self._last_ts = max(self._last_ts, int(self._clock() * 1000))
        return self._last_ts

    @staticmethod
    def _is_terminal(event_type: EventType, fields: dict[str, Any]) -> bool:
        if event_type in (EventType.FINAL_COMPLETE, EventType.ERROR):
            return True
        return event_type is EventType.STAGE_DATA and "checkpoint" in fields

    def emit(self, event_type: EventType, **fields: Any) -> bool:
        """Queue an event; returns False when it was dropped."""
        if self._closed or self._terminated:
            self.dropped += 1
            logger.debug("Event dropped", event=event_type.value, closed=self._closed)
            return False
        try:
            event = {"type": event_type.value, "timestamp": self._timestamp(), **fields}
            self._queue.put_nowait(event)
        except Exception as exc:
            logger.warning("Event emission failed", event=event_type.value, error=str(exc))
            return False
        if self._is_terminal(event_type, fields):
            self._terminated = True
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def sse(self) -> AsyncIterator[str]:
        """Serialize events as SSE frames, writing keepalives while idle."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), self.keepalive_interval)
            except TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            if item is _CLOSED:
                return
            yield sse_frame(item)

    # Typed helpers

    def emit_classification(self, intent: dict[str, Any]) -> bool:
        return self.emit(EventType.CLASSIFICATION, intent=intent)

    def emit_mode_selected(self, mode: str, complexity: str) -> bool:
        return self.emit(EventType.MODE_SELECTED, mode=mode, complexity=complexity)

    def emit_layer_start(self, layer: str, label: str, parallel_group: str | None = None) -> bool:
        return self.emit(EventType.LAYER_START, **_layer(layer, label, parallel_group))

    def emit_layer_chunk(self, layer: str, content: str) -> bool:
        return self.emit(EventType.LAYER_CHUNK, layer=layer, content=content)

    def emit_layer_artifact(self, layer: str, artifact: Any) -> bool:
        return self.emit(EventType.LAYER_ARTIFACT, layer=layer, artifact=artifact)

    def emit_layer_complete(self, layer: str, label: str, parallel_group: str | None = None) -> bool:
        return self.emit(EventType.LAYER_COMPLETE, **_layer(layer, label, parallel_group))

    def emit_parallel_start(self, group: str, layers: list[str]) -> bool:
        return self.emit(EventType.PARALLEL_START, group=group, layers=layers)

    def emit_escalation(self, reason: str, score: int) -> bool:
        return self.emit(EventType.ESCALATION, reason=reason, score=score)

    def emit_checkpoint(self, stage: str, checkpoint: dict[str, Any]) -> bool:
        return self.emit(EventType.STAGE_DATA, stage=stage, checkpoint=checkpoint)

    def emit_final_start(self) -> bool:
        return self.emit(EventType.FINAL_START)

    def emit_final_chunk(self, content: str) -> bool:
        return self.emit(EventType.FINAL_CHUNK, content=content)

    def emit_final_complete(
        self,
        confidence: int,
        assumptions: list[str] | None = None,
        uncertainty_notes: list[str] | None = None,
        sources: list[dict[str, Any]] | None = None,
    ) -> bool:
        return self.emit(
            EventType.FINAL_COMPLETE,
            confidence=confidence,
            assumptions=assumptions or [],
            uncertainty_notes=uncertainty_notes or [],
            sources=sources or [],
        )

    def emit_error(self, message: str) -> bool:
        return self.emit(EventType.ERROR, message=message)


def _layer(layer: str, label: str, parallel_group: str | None) -> dict[str, Any]:
    fields: dict[str, Any] = {"layer": layer, "label": label}
    if parallel_group:
        fields["parallel_group"] = parallel_group
    return fields
