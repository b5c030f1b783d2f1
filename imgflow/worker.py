"""
Task processor: claims pending image tasks and runs them.

Can run as:
  1. On demand from the HTTP triggers (POST /api/tasks/worker, /api/tasks/cron)
  2. FastAPI background task (same process, WORKER_ENABLED=true)
  3. Standalone worker (separate service): python -m imgflow.worker

Each attempt runs under the timeout guard; failures go to the retry policy,
which either returns the task to PENDING or marks it FAILED.
"""
import asyncio
from typing import Any, Dict, Optional

from imgflow.config import Settings, get_settings
from imgflow.database import AsyncSessionLocal
from imgflow.services import task_queue
from imgflow.services.batch import AttemptOutcome, BatchScheduler, BatchSummary
from imgflow.services.executor import StepExecutor
from imgflow.services.progress import ProgressReporter, SessionFactory
from imgflow.services.retry_policy import RetryPolicy, default_classifier, error_text
from imgflow.services.task_queue import TaskLease
from imgflow.services.timeout_guard import run_with_timeout
from imgflow.utils.logger import logger
from imgflow.utils.metrics import inc

MSG_BUSY = "处理器正在运行中"
MSG_IDLE = "没有待处理的任务"
MSG_DONE = "任务处理完成"
MSG_FAILED = "任务处理失败"


class TaskProcessor:
    """
    Claim → execute (with deadline) → complete or hand to the retry policy.

    ``is_processing`` keeps triggers in this process from overlapping; other
    processes are kept apart by the conditional claim.
    """

    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        executor: Optional[StepExecutor] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
        timeout_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.executor = executor or StepExecutor(session_factory, settings=self.settings)
        self.retry_policy = retry_policy or RetryPolicy(
            default_classifier(self.settings.retry_validation_errors)
        )
        self.timeout_seconds = timeout_seconds or self.settings.task_timeout_seconds
        self.scheduler = BatchScheduler(
            session_factory,
            self.claim_and_run,
            concurrency=concurrency or self.settings.max_concurrent_tasks,
        )
        self.is_processing = False

    async def run_attempt(self, lease: TaskLease) -> AttemptOutcome:
        """Execute one claimed attempt and record its outcome."""
        report = ProgressReporter(lease, self.session_factory)
        try:
            result = await run_with_timeout(
                self.executor.execute(lease, report),
                self.timeout_seconds,
                lease,
                self.session_factory,
            )
            async with self.session_factory() as db:
                applied = await task_queue.complete_task(db, lease, result.output, result.processed_image_id)
        except Exception as exc:
            async with self.session_factory() as db:
                decision = await self.retry_policy.on_failure(db, lease, exc)
            return AttemptOutcome(
                task_id=lease.task_id,
                task_type=lease.type.value,
                success=False,
                error=error_text(exc),
                decision=decision.value,
            )

        inc("task.completed" if applied else "task.completed_stale")
        return AttemptOutcome(
            task_id=lease.task_id,
            task_type=lease.type.value,
            success=applied,
            output=result.output,
        )

    async def claim_and_run(self, task_id: str) -> AttemptOutcome:
        async with self.session_factory() as db:
            lease = await task_queue.claim_task(db, task_id)
        if lease is None:
            return AttemptOutcome(task_id=task_id, success=False, skipped=True)
        return await self.run_attempt(lease)

    async def process_next_task(self) -> Dict[str, Any]:
        """Claim and run the next pending task, if any."""
        if self.is_processing:
            return {"message": MSG_BUSY}

        self.is_processing = True
        try:
            async with self.session_factory() as db:
                lease = await task_queue.claim_next_task(db)
            if lease is None:
                return {"message": MSG_IDLE}

            outcome = await self.run_attempt(lease)
            response: Dict[str, Any] = {
                "message": MSG_DONE if outcome.success else MSG_FAILED,
                "taskId": outcome.task_id,
                "type": outcome.task_type,
            }
            if outcome.success:
                response["result"] = outcome.output
            else:
                response["error"] = outcome.error
                response["decision"] = outcome.decision
            return response
        finally:
            self.is_processing = False

    async def drain(self, max_per_round: Optional[int] = None, max_rounds: Optional[int] = None) -> Dict[str, Any]:
        """Process pending tasks in rounds until the queue is empty or the round cap is hit."""
        if self.is_processing:
            return {"message": MSG_BUSY, **BatchSummary().to_response()}

        self.is_processing = True
        try:
            summary = await self.scheduler.drain(
                max_per_round or self.settings.batch_max_tasks,
                max_rounds or self.settings.batch_max_rounds,
            )
        finally:
            self.is_processing = False
        return {"message": "批量处理完成", **summary.to_response()}

    async def recover(self) -> Dict[str, Any]:
        """Requeue interrupted PROCESSING tasks. Refused while this processor is busy."""
        if self.is_processing:
            return {"message": MSG_BUSY, "recovered": 0, "failed": 0, "total": 0}
        async with self.session_factory() as db:
            return await task_queue.recover_stuck_tasks(db)


_processor: Optional[TaskProcessor] = None


def get_processor() -> TaskProcessor:
    global _processor
    if _processor is None:
        _processor = TaskProcessor()
    return _processor


# ---------------------------------------------------------------------------
# Worker loop
# ---------------------------------------------------------------------------

async def worker_loop(
    processor: Optional[TaskProcessor] = None,
    poll_interval: Optional[float] = None,
    max_idle_interval: Optional[float] = None,
) -> None:
    """
    Poll for pending tasks and process them one at a time.

    Uses adaptive polling: starts at poll_interval, backs off to max_idle_interval
    when no tasks are found, resets when a task is processed.
    """
    processor = processor or get_processor()
    settings = processor.settings
    poll_interval = poll_interval or settings.worker_poll_interval
    max_idle_interval = max_idle_interval or settings.worker_max_idle_interval
    current_interval = poll_interval
    logger.info(f"worker.started poll_interval={poll_interval}")

    while True:
        try:
            result = await processor.process_next_task()
            if result.get("taskId"):
                current_interval = poll_interval  # Reset to fast polling
            else:
                # Nothing to do (or a trigger is already running), back off
                current_interval = min(current_interval * 1.5, max_idle_interval)
        except Exception as exc:
            logger.error("worker.poll_error", extra={"error": str(exc)[:500]})
            current_interval = max_idle_interval

        await asyncio.sleep(current_interval)


async def run_cleanup(
    session_factory: SessionFactory = AsyncSessionLocal,
    interval_hours: int = 6,
    max_age_hours: Optional[int] = None,
) -> None:
    """Periodically delete old COMPLETED/FAILED tasks."""
    max_age_hours = max_age_hours or get_settings().cleanup_max_age_hours
    while True:
        await asyncio.sleep(interval_hours * 3600)
        try:
            async with session_factory() as db:
                deleted = await task_queue.cleanup_old_tasks(db, max_age_hours=max_age_hours)
                if deleted:
                    logger.info("worker.cleanup", extra={"deleted": deleted})
        except Exception as exc:
            logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from imgflow.database import init_db
    await init_db()

    processor = get_processor()
    recovery = await processor.recover()
    if recovery["total"]:
        logger.info("worker.recovered", extra={"recovered": recovery["recovered"], "failed": recovery["failed"]})

    # Run worker + cleanup concurrently
    await asyncio.gather(
        worker_loop(processor),
        run_cleanup(),
    )


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
