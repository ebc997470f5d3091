"""
Fan-out/fan-in executor for parallel streamed generations.

Branches start staggered, each under its own hard timeout. A timed-out
branch is cancelled without waiting for it and marked failed. The executor
waits for every branch to settle and returns results in task order; failed
branches leave a placeholder, and only a fan-out where every branch failed
is an error.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

from ..clients.errors import FanOutError
from ..clients.llm import ChatProvider, Message, ModelSpec
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector

logger = get_logger(__name__)

TRUNCATION_MARKER = "\n\n[... truncated]"

ChunkCallback = Callable[[str, str], None]
StopCheck = Callable[[], bool]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class FanOutTask:
    id: str
    messages: list[Message]
    spec: ModelSpec = field(default_factory=ModelSpec)
    status: TaskStatus = TaskStatus.PENDING
    result: str = ""
    failure_reason: str | None = None

    @property
    def settled(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def complete(self, result: str) -> None:
        if self.settled:
            return
        self.status = TaskStatus.COMPLETED
        self.result = result

    def fail(self, reason: str) -> None:
        if self.settled:
            return
        self.status = TaskStatus.FAILED
        self.failure_reason = reason

    @property
    def placeholder(self) -> str:
        return f"[{self.id} unavailable: {self.failure_reason}]"


def cap_result(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class FanOutExecutor:
    def __init__(
        self,
        provider: ChatProvider,
        stagger: float = 0.5,
        result_cap: int = 6000,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.stagger = stagger
        self.result_cap = result_cap
        self._sleep = sleep
        self._abandoned: set[asyncio.Task] = set()
        self._metrics = get_metrics_collector()

    async def _consume(
        self, task: FanOutTask, on_chunk: ChunkCallback | None, should_stop: StopCheck | None
    ) -> str:
        parts: list[str] = []
        chunks = self.provider.stream(task.messages, task.spec)
        async with aclosing(chunks):
            async for chunk in chunks:
                parts.append(chunk)
                if on_chunk is not None:
                    on_chunk(task.id, chunk)
                if should_stop is not None and should_stop():
                    logger.info("Budget reached, keeping partial branch output", task=task.id)
                    break
        return "".join(parts)

    async def _branch(
        self,
        index: int,
        task: FanOutTask,
        timeout: float,
        on_chunk: ChunkCallback | None,
        should_stop: StopCheck | None,
    ) -> None:
        if index and self.stagger:
            await self._sleep(index * self.stagger)

        task.status = TaskStatus.RUNNING
        inner = asyncio.create_task(self._consume(task, on_chunk, should_stop), name=f"fanout-{task.id}")
        try:
            done, _ = await asyncio.wait({inner}, timeout=timeout)
        except asyncio.CancelledError:
            inner.cancel()
            raise

        if not done:
            inner.cancel()
            self._abandoned.add(inner)
            inner.add_done_callback(self._abandoned.discard)
            task.fail(f"timed out after {timeout:g}s")
        elif inner.cancelled():
            task.fail("cancelled")
        elif (exc := inner.exception()) is not None:
            task.fail(f"{type(exc).__name__}: {exc}"[:300])
        elif not inner.result().strip():
            task.fail("empty response")
        else:
            task.complete(inner.result())
        self._metrics.record_fanout_task(task.status.value)

    async def run_parallel(
        self,
        tasks: list[FanOutTask],
        per_task_timeout: float,
        *,
        on_chunk: ChunkCallback | None = None,
        should_stop: StopCheck | None = None,
    ) -> list[str]:
        """Run every task, wait for all of them, return results in task order.

        Raises:
            FanOutError: every task failed
        """
        if not tasks:
            return []

        await asyncio.gather(
            *(
                self._branch(i, task, per_task_timeout, on_chunk, should_stop)
                for i, task in enumerate(tasks)
            )
        )

        failed = {task.id: task.failure_reason or "unknown" for task in tasks if task.status is TaskStatus.FAILED}
        if len(failed) == len(tasks):
            logger.error("All parallel tasks failed", tasks=len(tasks))
            raise FanOutError(failed)
        if failed:
            logger.warning(
                "Some parallel tasks failed, continuing with placeholders",
                failed=",".join(failed),
                succeeded=len(tasks) - len(failed),
            )

        return [
            cap_result(task.result, self.result_cap)
            if task.status is TaskStatus.COMPLETED
            else task.placeholder
            for task in tasks
        ]
