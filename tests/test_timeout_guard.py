import asyncio
import time

import pytest
from sqlalchemy import select

from imgflow.config import get_settings
from imgflow.models.processed_image import ProcessedImage
from imgflow.models.task import TaskStatus, TaskType
from imgflow.services import task_queue
from imgflow.services.errors import TaskTimeoutError
from imgflow.services.executor import StepExecutor
from imgflow.services.retry_policy import RetryPolicy
from imgflow.services.timeout_guard import run_with_timeout
from imgflow.utils import metrics
from imgflow.worker import TaskProcessor

from conftest import GREEN, RED, FakeRegistry, FakeVolcengine, fetch


class SlowExecutor:
    """Reports a step, then hangs well past any test deadline."""

    def __init__(self, hang=5.0):
        self.hang = hang
        self.cancelled = False

    async def execute(self, lease, report):
        await report("下载原图", 30)
        try:
            await asyncio.sleep(self.hang)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class ZombieExecutor:
    """Keeps working after the guard gives up, then tries to write progress."""

    def __init__(self, delay=0.3):
        self.delay = delay
        self.late_writes = []
        self.inner = None

    async def execute(self, lease, report):
        await report("调用服务", 20)

        async def keep_going():
            await asyncio.sleep(self.delay)
            self.late_writes.append(await report("迟到的进度", 99))

        self.inner = asyncio.ensure_future(keep_going())
        await asyncio.shield(self.inner)


def make_processor(session_factory, executor, timeout):
    return TaskProcessor(
        session_factory=session_factory,
        executor=executor,
        settings=get_settings(),
        timeout_seconds=timeout,
    )


@pytest.mark.unit
class TestDeadline:
    async def test_hung_attempt_is_abandoned_and_retried(self, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        executor = SlowExecutor()
        processor = make_processor(session_factory, executor, timeout=0.2)

        result = await asyncio.wait_for(processor.process_next_task(), timeout=3)
        await asyncio.sleep(0)

        row = await fetch(session_factory, task.id)
        assert result["decision"] == "RETRY"
        assert row.status == TaskStatus.PENDING
        assert row.retry_count == 1
        assert "任务处理超时" in row.error_message
        assert executor.cancelled is True
        assert metrics.get_snapshot()["counters"]["task.timeout"] == 1

    async def test_timeout_message_carries_last_position(self, session_factory, enqueue):
        task = await enqueue(max_retries=0)
        processor = make_processor(session_factory, SlowExecutor(), timeout=0.2)

        await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.FAILED
        assert "下载原图" in row.error_message
        assert "30%" in row.error_message

    async def test_fast_work_returns_its_result(self, db, session_factory, enqueue):
        await enqueue()
        lease = await task_queue.claim_next_task(db)

        async def work():
            return "done"

        assert await run_with_timeout(work(), 1, lease, session_factory) == "done"

    async def test_work_errors_propagate_unchanged(self, db, session_factory, enqueue):
        await enqueue()
        lease = await task_queue.claim_next_task(db)

        async def work():
            raise ValueError("bad payload")

        with pytest.raises(ValueError, match="bad payload"):
            await run_with_timeout(work(), 1, lease, session_factory)

    async def test_guard_raises_timeout_error(self, db, session_factory, enqueue):
        await enqueue()
        lease = await task_queue.claim_next_task(db)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await run_with_timeout(asyncio.sleep(5), 0.05, lease, session_factory)

        assert exc_info.value.current_step == task_queue.STEP_STARTED
        assert exc_info.value.timeout_seconds == 0.05


@pytest.mark.unit
class TestStaleAttemptFencing:
    """Writes from an abandoned attempt never land on a later attempt's row."""

    async def test_zombie_progress_is_dropped(self, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        executor = ZombieExecutor(delay=0.3)
        processor = make_processor(session_factory, executor, timeout=0.1)

        await processor.process_next_task()
        await asyncio.wait_for(executor.inner, timeout=3)

        row = await fetch(session_factory, task.id)
        assert executor.late_writes == [False]
        assert row.status == TaskStatus.PENDING
        assert row.progress == 0
        assert row.current_step == "等待重试 (1/3)"

    async def test_stale_lease_cannot_complete_newer_attempt(self, db, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        stale = await task_queue.claim_next_task(db)
        async with session_factory() as session:
            await RetryPolicy().on_failure(session, stale, TaskTimeoutError(1, "调用服务", 20))
        current = await task_queue.claim_next_task(db)

        assert current.retry_count == stale.retry_count + 1
        assert await task_queue.update_progress(db, stale, 80, "旧进度") is False
        assert await task_queue.complete_task(db, stale, {"processedImageUrl": "/files/old.png"}) is False

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.PROCESSING
        assert row.output_data is None
        assert row.current_step == task_queue.STEP_STARTED

        assert await task_queue.complete_task(db, current, {"processedImageUrl": "/files/new.png"}) is True
        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.COMPLETED
        assert row.output_data == {"processedImageUrl": "/files/new.png"}

    async def test_stale_failure_does_not_requeue(self, db, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        stale = await task_queue.claim_next_task(db)
        async with session_factory() as session:
            await RetryPolicy().on_failure(session, stale, RuntimeError("first"))
        current = await task_queue.claim_next_task(db)
        await task_queue.complete_task(db, current, {"processedImageUrl": "/files/ok.png"})

        async with session_factory() as session:
            await RetryPolicy().on_failure(session, stale, RuntimeError("late"))

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.COMPLETED
        assert row.retry_count == 1
        assert row.error_message is None


class HangingVolcengine(FakeVolcengine):
    async def outpaint(self, image, user_id, **params):
        self.outpaint_calls.append((image, params))
        await asyncio.sleep(30)


@pytest.mark.unit
class TestDeadlineTiming:
    async def test_attempt_abandoned_at_the_deadline(self, session_factory, enqueue):
        deadline = 0.3
        await enqueue(max_retries=0)
        processor = make_processor(session_factory, SlowExecutor(), timeout=deadline)

        started = time.monotonic()
        await processor.process_next_task()
        elapsed = time.monotonic() - started

        assert deadline - 0.01 <= elapsed < deadline + 0.5


@pytest.mark.unit
class TestTimedOutOneClick:
    async def test_artifact_record_failed_with_the_task(self, session_factory, storage, enqueue):
        registry = FakeRegistry(volcengine=HangingVolcengine())
        executor = StepExecutor(session_factory, storage=storage, registry_factory=lambda lease: registry)
        processor = make_processor(session_factory, executor, timeout=0.3)
        task = await enqueue(
            task_type=TaskType.ONE_CLICK_WORKFLOW,
            input_data={"imageUrl": RED, "referenceImageUrl": GREEN, "aiModel": "gpt", "enableWatermark": False},
            max_retries=0,
        )

        await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        async with session_factory() as session:
            images = (await session.execute(select(ProcessedImage))).scalars().all()
        assert row.status == TaskStatus.FAILED
        assert "扩图" in row.error_message
        assert [image.status for image in images] == ["FAILED"]
