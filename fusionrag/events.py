from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from .utils import logger


# 插入流程阶段
class TaskStage(str, Enum):
    DOCUMENT_CHUNKING = "document_chunking"
    PROCESSING_CHUNKS = "processing_chunks"
    STORING_TEXT_CHUNKS = "storing_text_chunks"
    STORING_CHUNK_VECTORS = "storing_chunk_vectors"
    MERGING_ENTITIES = "merging_entities"
    MERGING_RELATIONS = "merging_relations"
    UPDATING_STORAGE = "updating_storage"
    STORING_FULL_DOCUMENT = "storing_full_document"
    PERSISTING = "persisting"
    COMPLETED = "completed"


@dataclass
class TaskState:
    """One progress event emitted by the insert pipeline."""

    stage: TaskStage
    current: int = 0
    total: int = 0
    description: str = ""
    doc_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def is_completed(self) -> bool:
        return self.stage == TaskStage.COMPLETED

    @property
    def progress_percentage(self) -> float:
        if self.total <= 0:
            return 100.0 if self.is_completed else 0.0
        return min(100.0, self.current * 100.0 / self.total)


ProgressCallback = Callable[[TaskState], Union[None, Awaitable[None]]]


class ProgressChannel:
    """Unbounded event channel between the pipeline and its subscribers.

    ``emit`` never blocks: events are queued and a single background dispatcher
    task hands them to subscribers in order. Subscriber errors are logged and
    dropped; they never reach the producer.
    """

    def __init__(self):
        self._queue: asyncio.Queue[TaskState] | None = None
        self._subscribers: list[ProgressCallback] = []
        self._dispatcher: asyncio.Task | None = None

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a sync or async callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, state: TaskState) -> None:
        if not self._subscribers:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._queue.put_nowait(state)
        # 懒启动分发任务
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch())

    async def _dispatch(self) -> None:
        queue = self._queue
        while True:
            state = await queue.get()
            try:
                for callback in list(self._subscribers):
                    try:
                        result = callback(state)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.warning(
                            f"Progress subscriber failed on {state.stage.value}: {e}"
                        )
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._queue is not None and self._dispatcher is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        await self.drain()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
