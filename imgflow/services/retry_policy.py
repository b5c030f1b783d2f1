"""
Decides what happens to a task after a failed attempt: back to the queue
while retry budget remains, FAILED otherwise.
"""
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from imgflow.models.task import TaskQueue, TaskStatus, utcnow
from imgflow.services.errors import TaskValidationError
from imgflow.services.task_queue import TaskLease, lease_filter
from imgflow.utils.logger import logger
from imgflow.utils.metrics import inc

ErrorClassifier = Callable[[BaseException], bool]

STEP_FAILED = "处理失败"
MAX_ERROR_LENGTH = 1000


class RetryDecision(str, Enum):
    RETRY = "RETRY"
    FAIL = "FAIL"


def default_classifier(retry_validation_errors: bool = False) -> ErrorClassifier:
    """Everything is retryable except validation failures (unless told otherwise)."""

    def is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, TaskValidationError):
            return retry_validation_errors
        return True

    return is_retryable


def error_text(exc: BaseException) -> str:
    return (str(exc) or type(exc).__name__)[:MAX_ERROR_LENGTH]


class RetryPolicy:
    def __init__(self, is_retryable: Optional[ErrorClassifier] = None):
        self.is_retryable = is_retryable or default_classifier()

    def decide(self, lease: TaskLease, exc: BaseException) -> RetryDecision:
        if self.is_retryable(exc) and lease.retry_count < lease.max_retries:
            return RetryDecision.RETRY
        return RetryDecision.FAIL

    async def on_failure(self, db: AsyncSession, lease: TaskLease, exc: BaseException) -> RetryDecision:
        """
        Apply the decision for a failed attempt.

        RETRY: retry_count + 1, back to PENDING with progress and started_at
        reset; the error stays in error_message as a breadcrumb. The task keeps
        its original created_at, so it competes for its old place in line.

        FAIL: terminal. Exhausted budgets are reported as such; non-retryable
        errors are reported as-is.
        """
        decision = self.decide(lease, exc)
        message = error_text(exc)

        if decision == RetryDecision.RETRY:
            next_count = lease.retry_count + 1
            values = dict(
                status=TaskStatus.PENDING,
                retry_count=next_count,
                progress=0,
                started_at=None,
                current_step=f"等待重试 ({next_count}/{lease.max_retries})",
                error_message=message,
                updated_at=utcnow(),
            )
        else:
            if self.is_retryable(exc):
                message = f"已达到最大重试次数 ({lease.max_retries})，仍然失败: {message}"[:MAX_ERROR_LENGTH]
            now = utcnow()
            values = dict(
                status=TaskStatus.FAILED,
                current_step=STEP_FAILED,
                error_message=message,
                completed_at=now,
                updated_at=now,
            )

        result = await db.execute(
            update(TaskQueue).where(lease_filter(lease)).values(**values).execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount != 1:
            logger.warning("task.failure_fenced", extra={"task_id": lease.task_id, "attempt": lease.attempt})
        elif decision == RetryDecision.RETRY:
            inc("task.retry")
            logger.warning(
                "task.retry_scheduled",
                extra={
                    "task_id": lease.task_id,
                    "task_type": lease.type.value,
                    "attempt": lease.attempt,
                    "max_retries": lease.max_retries,
                    "error": message[:200],
                    "error_type": type(exc).__name__,
                },
            )
        else:
            inc("task.failed")
            logger.error(
                "task.failed",
                extra={
                    "task_id": lease.task_id,
                    "task_type": lease.type.value,
                    "attempt": lease.attempt,
                    "error": message[:200],
                    "error_type": type(exc).__name__,
                },
            )
        return decision
