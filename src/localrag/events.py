"""Progress event channel published by the pipeline controller.

Consumers subscribe with a callback or iterate ``stream()``; the controller only ever
calls :meth:`ProgressChannel.publish`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable

from localrag.metrics.observability import get_logger


class ProgressStage(str, Enum):
    INIT = "init"
    EMBEDDING_LOAD = "embedding-load"
    GENERATION_LOAD = "generation-load"
    INDEXING = "indexing"
    RETRIEVAL = "retrieval"
    GENERATION = "generation"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    stage: ProgressStage
    message: str
    progress: int = 0

    def to_dict(self) -> dict[str, object]:
        return {"stage": self.stage.value, "message": self.message, "progress": self.progress}


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Fan-out of progress events to callbacks and async queues."""

    def __init__(self) -> None:
        self._callbacks: list[ProgressCallback] = []
        self._queues: set[asyncio.Queue[ProgressEvent | None]] = set()
        self._logger = get_logger("events")

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""

        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def stream(self) -> AsyncIterator[ProgressEvent]:
        """Yield events until the channel is closed."""

        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._queues.add(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._queues.discard(queue)

    def publish(self, stage: ProgressStage, message: str, progress: int = 0) -> ProgressEvent:
        event = ProgressEvent(stage=stage, message=message, progress=max(0, min(100, int(progress))))
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as exc:
                self._logger.warning("progress.subscriber_error", stage=stage.value, error=str(exc))
        for queue in list(self._queues):
            queue.put_nowait(event)
        return event

    def close(self) -> None:
        for queue in list(self._queues):
            queue.put_nowait(None)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)


__all__ = ["ProgressCallback", "ProgressChannel", "ProgressEvent", "ProgressStage"]
