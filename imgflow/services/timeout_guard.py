"""
Wall-clock deadline for one task attempt.

On expiry the guard stops waiting and raises TaskTimeoutError carrying the
attempt's last recorded step and progress. The in-flight coroutine is only
signalled to cancel; provider I/O already on the wire may still finish, and
any write it attempts afterwards is fenced off by the lease.
"""
import asyncio
from typing import Awaitable, TypeVar

from imgflow.services import task_queue
from imgflow.services.errors import TaskTimeoutError
from imgflow.services.progress import SessionFactory
from imgflow.services.task_queue import TaskLease
from imgflow.utils.logger import logger
from imgflow.utils.metrics import inc

T = TypeVar("T")

CANCEL_GRACE_SECONDS = 1.0


def _reap(task: "asyncio.Task") -> None:
    # Retrieve the abandoned attempt's outcome so it is not reported as never retrieved
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("worker.abandoned_attempt_error", extra={"error": str(exc)[:200]})


async def run_with_timeout(
    work: Awaitable[T],
    timeout_seconds: float,
    lease: TaskLease,
    session_factory: SessionFactory,
) -> T:
    task = asyncio.ensure_future(work)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.cancel()
    task.add_done_callback(_reap)
    # Let the attempt run its cancellation cleanup (artifact records) before the retry decision
    await asyncio.wait({task}, timeout=CANCEL_GRACE_SECONDS)

    async with session_factory() as db:
        current_step, progress = await task_queue.read_position(db, lease.task_id)

    inc("task.timeout")
    logger.error(
        "worker.timeout",
        extra={
            "task_id": lease.task_id,
            "task_type": lease.type.value,
            "attempt": lease.attempt,
            "step": current_step,
            "progress": progress,
        },
    )
    raise TaskTimeoutError(timeout_seconds, current_step, progress)
