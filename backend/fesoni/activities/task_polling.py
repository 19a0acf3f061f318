"""Background polling of remote document-processing tasks.

A batch is the list of ProcessingTask objects of one document bundle. Every
`interval` seconds (first tick one interval after start) each task still
processing is queried concurrently; the tick waits for every query before
applying results, so ticks never overlap. The batch ends when every task is
terminal or when `timeout` seconds have passed since it started, whichever
comes first. A query error leaves the task processing until the next tick.

Only this module changes a task's status, and only through
ProcessingTask.resolve, which refuses to touch a terminal task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from fesoni.config import settings
from fesoni.models.contracts import BatchSummary, ProcessingTask
from fesoni.utils.document_service import TaskStatusResult

log = structlog.get_logger("task_polling")

StatusCheck = Callable[[str], Awaitable[TaskStatusResult]]
UpdateCallback = Callable[[list[ProcessingTask]], None]
FinishCallback = Callable[[BatchSummary], Awaitable[None] | None]


def summarize(tasks: list[ProcessingTask], *, timed_out: bool = False) -> BatchSummary:
    completed = sum(1 for t in tasks if t.status == "completed")
    failed = sum(1 for t in tasks if t.status == "failed")
    pending = len(tasks) - completed - failed
    return BatchSummary(
        completed=completed,
        failed=failed,
        pending=pending,
        timed_out=timed_out and pending > 0,
    )


async def poll_once(tasks: list[ProcessingTask], check_status: StatusCheck) -> list[ProcessingTask]:
    """Run one tick. Returns the tasks that reached a terminal state."""
    active = [t for t in tasks if not t.is_terminal]
    if not active:
        return []

    results = await asyncio.gather(
        *(check_status(t.task_id) for t in active),
        return_exceptions=True,
    )

    changed: list[ProcessingTask] = []
    for task, result in zip(active, results):
        if isinstance(result, BaseException):
            log.warning(
                "task_status_query_failed",
                task_id=task.task_id,
                task_type=task.type,
                error=str(result)[:200],
            )
            continue
        status = result.status
        if status == "completed" and not result.download_url:
            status = "failed"
        if task.resolve(status, result.download_url):
            log.info("task_resolved", task_id=task.task_id, task_type=task.type, status=status)
            changed.append(task)
    return changed


async def _poll_until_terminal(
    tasks: list[ProcessingTask],
    check_status: StatusCheck,
    interval: float,
    on_update: UpdateCallback | None,
) -> None:
    tick = 0
    while any(not t.is_terminal for t in tasks):
        await asyncio.sleep(interval)
        tick += 1
        changed = await poll_once(tasks, check_status)
        log.debug("poll_tick", tick=tick, changed=len(changed))
        if changed and on_update is not None:
            on_update(changed)


async def poll_tasks(
    tasks: list[ProcessingTask],
    check_status: StatusCheck,
    *,
    interval: float | None = None,
    timeout: float | None = None,
    on_update: UpdateCallback | None = None,
) -> BatchSummary:
    """Poll a batch to completion or timeout and return its summary.

    Tasks still processing at the timeout are left processing. A tick that
    is in flight when the timeout fires is abandoned without applying any
    of its results.
    """
    interval = settings.poll_interval_seconds if interval is None else interval
    timeout = settings.poll_timeout_seconds if timeout is None else timeout

    log.info("poll_batch_start", tasks=len(tasks), interval=interval, timeout=timeout)
    timed_out = False
    try:
        await asyncio.wait_for(
            _poll_until_terminal(tasks, check_status, interval, on_update),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        timed_out = True

    summary = summarize(tasks, timed_out=timed_out)
    log.info(
        "poll_batch_complete",
        completed=summary.completed,
        failed=summary.failed,
        pending=summary.pending,
        timed_out=summary.timed_out,
    )
    return summary


class TaskPoller:
    """Runs at most one polling batch per key (a chat message id).

    Starting a batch for a key that already has one cancels the previous
    local asyncio.Task; nothing is sent to the remote service.
    """

    def __init__(
        self,
        check_status: StatusCheck,
        *,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self._check_status = check_status
        self._interval = interval
        self._timeout = timeout
        self._batches: dict[str, asyncio.Task[BatchSummary]] = {}

    def start(
        self,
        key: str,
        tasks: list[ProcessingTask],
        *,
        on_update: UpdateCallback | None = None,
        on_finish: FinishCallback | None = None,
    ) -> asyncio.Task[BatchSummary]:
        previous = self._batches.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
            log.info("poll_batch_replaced", key=key)

        async def run() -> BatchSummary:
            summary = await poll_tasks(
                tasks,
                self._check_status,
                interval=self._interval,
                timeout=self._timeout,
                on_update=on_update,
            )
            if on_finish is not None:
                result = on_finish(summary)
                if asyncio.iscoroutine(result):
                    await result
            return summary

        batch = asyncio.create_task(run(), name=f"poll:{key}")
        self._batches[key] = batch
        batch.add_done_callback(lambda done: self._forget(key, done))
        return batch

    def _forget(self, key: str, batch: asyncio.Task[BatchSummary]) -> None:
        if self._batches.get(key) is batch:
            del self._batches[key]
        if not batch.cancelled() and batch.exception() is not None:
            log.error("poll_batch_crashed", key=key, error=str(batch.exception())[:200])

    def is_running(self, key: str) -> bool:
        batch = self._batches.get(key)
        return batch is not None and not batch.done()

    def cancel(self, key: str) -> bool:
        batch = self._batches.pop(key, None)
        if batch is None or batch.done():
            return False
        batch.cancel()
        return True

    async def cancel_all(self) -> None:
        batches = list(self._batches.values())
        self._batches.clear()
        for batch in batches:
            batch.cancel()
        await asyncio.gather(*batches, return_exceptions=True)
