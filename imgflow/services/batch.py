"""
Batch drain: claim-and-run pending tasks in bounded rounds.

Each round peeks up to ``max_per_round`` pending ids in claim order and runs
them with at most ``concurrency`` attempts in flight. Draining stops when a
round comes back short (queue empty) or after ``max_rounds``.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from imgflow.services import task_queue
from imgflow.services.progress import SessionFactory
from imgflow.utils.logger import logger
from imgflow.utils.metrics import inc

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class AttemptOutcome:
    task_id: str
    success: bool
    task_type: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    decision: Optional[str] = None
    # Lost the claim to another worker; nothing ran
    skipped: bool = False


@dataclass
class BatchSummary:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    rounds: int = 0
    outcomes: List[AttemptOutcome] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "processedCount": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "rounds": self.rounds,
        }


async def run_bounded(
    items: Iterable[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
) -> List[Any]:
    """
    Run fn over items with at most `limit` calls in flight.

    Results come back in input order; an item whose call raised yields the
    exception object instead of cancelling its siblings.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def guarded(item: T) -> R:
        async with semaphore:
            return await fn(item)

    return await asyncio.gather(*(guarded(item) for item in items), return_exceptions=True)


class BatchScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        run_task: Callable[[str], Awaitable[AttemptOutcome]],
        concurrency: int = 1,
    ):
        self._session_factory = session_factory
        self._run_task = run_task
        self.concurrency = concurrency

    async def drain(self, max_per_round: int, max_rounds: int = 10) -> BatchSummary:
        summary = BatchSummary()

        while summary.rounds < max_rounds:
            async with self._session_factory() as db:
                ids = await task_queue.peek_pending_ids(db, max_per_round)
            if not ids:
                break

            summary.rounds += 1
            results = await run_bounded(ids, self.concurrency, self._run_task)

            round_ok = round_failed = 0
            for task_id, result in zip(ids, results):
                if isinstance(result, BaseException):
                    outcome = AttemptOutcome(task_id=task_id, success=False, error=str(result)[:500])
                    logger.error("batch.attempt_error", extra={"task_id": task_id, "error": str(result)[:200]})
                else:
                    outcome = result
                if outcome.skipped:
                    continue
                summary.outcomes.append(outcome)
                summary.processed += 1
                if outcome.success:
                    round_ok += 1
                else:
                    round_failed += 1

            summary.successful += round_ok
            summary.failed += round_failed
            inc("batch.rounds")
            logger.info(
                "batch.round",
                extra={
                    "round": summary.rounds,
                    "processed": round_ok + round_failed,
                    "successful": round_ok,
                    "failed": round_failed,
                },
            )

            if len(ids) < max_per_round:
                break

        logger.info(
            "batch.drained",
            extra={
                "round": summary.rounds,
                "processed": summary.processed,
                "successful": summary.successful,
                "failed": summary.failed,
            },
        )
        return summary
