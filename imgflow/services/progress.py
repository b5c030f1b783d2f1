"""Per-attempt progress reporting, the only channel pollers see while a task runs."""
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from imgflow.services import task_queue
from imgflow.services.task_queue import TaskLease
from imgflow.utils.logger import logger

SessionFactory = Callable[[], AsyncSession]


class ProgressReporter:
    """
    Callable bound to one attempt: ``await report("步骤1/4：开始背景替换", 5, 0)``.

    Each write uses its own short-lived session so progress is visible to
    pollers immediately, and a percentage lower than the last one reported is
    raised to it.
    """

    def __init__(self, lease: TaskLease, session_factory: SessionFactory):
        self.lease = lease
        self._session_factory = session_factory
        self.last_progress = 0

    async def __call__(self, current_step: str, progress: int, completed_steps: Optional[int] = None) -> bool:
        progress = max(self.last_progress, min(int(progress), 100))
        self.last_progress = progress
        async with self._session_factory() as db:
            applied = await task_queue.update_progress(db, self.lease, progress, current_step, completed_steps)
        logger.info(
            f"[Task] {current_step}",
            extra={"task_id": self.lease.task_id, "step": current_step, "progress": progress},
        )
        return applied
