import pytest

from imgflow.config import get_settings
from imgflow.models.task import TaskStatus, TaskType
from imgflow.services.errors import TaskValidationError, TransientProviderError
from imgflow.services.executor import ExecutionResult
from imgflow.services.retry_policy import RetryDecision, RetryPolicy, default_classifier
from imgflow.worker import MSG_IDLE, TaskProcessor

from conftest import FakeRegistry, FakeVolcengine, fetch


class ScriptedExecutor:
    """Plays back a list of outcomes: exceptions are raised, dicts returned as output."""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []

    async def execute(self, lease, report):
        self.calls.append((lease.task_id, lease.attempt))
        await report("处理中...", 40)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return ExecutionResult(output=outcome or {"processedImageUrl": "/files/u/x.png"})


def make_processor(session_factory, executor, policy=None):
    return TaskProcessor(
        session_factory=session_factory,
        executor=executor,
        retry_policy=policy,
        settings=get_settings(),
        timeout_seconds=5,
    )


@pytest.mark.unit
class TestRetryBound:
    async def test_always_failing_task_retries_then_fails(self, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        executor = ScriptedExecutor(default=TransientProviderError("provider down", provider="volcengine"))
        processor = make_processor(session_factory, executor)

        trace = []
        for _ in range(3):
            await processor.process_next_task()
            row = await fetch(session_factory, task.id)
            trace.append((row.status, row.retry_count))
            assert row.completed_at is None
            assert row.progress == 0
            assert row.started_at is None

        await processor.process_next_task()
        final = await fetch(session_factory, task.id)

        assert trace == [
            (TaskStatus.PENDING, 1),
            (TaskStatus.PENDING, 2),
            (TaskStatus.PENDING, 3),
        ]
        assert final.status == TaskStatus.FAILED
        assert final.retry_count == 3
        assert final.completed_at is not None
        assert "已达到最大重试次数 (3)" in final.error_message
        assert "provider down" in final.error_message
        assert len(executor.calls) == 4

        # Never reconsidered
        assert (await processor.process_next_task())["message"] == MSG_IDLE
        assert len(executor.calls) == 4

    async def test_retry_leaves_breadcrumb(self, session_factory, enqueue):
        task = await enqueue(max_retries=2)
        processor = make_processor(session_factory, ScriptedExecutor([TransientProviderError("HTTP 503")]))

        await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.PENDING
        assert row.current_step == "等待重试 (1/2)"
        assert row.error_message == "HTTP 503"

    async def test_zero_retry_budget_fails_first_time(self, session_factory, enqueue):
        task = await enqueue(max_retries=0)
        processor = make_processor(session_factory, ScriptedExecutor([TransientProviderError("boom")]))

        await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.FAILED
        assert row.retry_count == 0


@pytest.mark.unit
class TestRetryFairness:
    async def test_retried_task_keeps_its_place(self, session_factory, enqueue):
        older = await enqueue()
        newer = await enqueue()
        executor = ScriptedExecutor([TransientProviderError("flaky"), {"processedImageUrl": "/files/u/a.png"}])
        processor = make_processor(session_factory, executor)

        await processor.process_next_task()
        await processor.process_next_task()

        assert [task_id for task_id, _ in executor.calls] == [older.id, older.id]
        assert (await fetch(session_factory, older.id)).status == TaskStatus.COMPLETED
        assert (await fetch(session_factory, newer.id)).status == TaskStatus.PENDING

    async def test_retry_does_not_touch_created_at(self, session_factory, enqueue):
        task = await enqueue()
        before = (await fetch(session_factory, task.id)).created_at
        processor = make_processor(session_factory, ScriptedExecutor([TransientProviderError("flaky")]))

        await processor.process_next_task()

        assert (await fetch(session_factory, task.id)).created_at == before


@pytest.mark.unit
class TestErrorClassification:
    async def test_validation_error_fails_without_retry(self, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        executor = ScriptedExecutor([TaskValidationError("缺少参考图片")])
        processor = make_processor(session_factory, executor)

        result = await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        assert result["decision"] == RetryDecision.FAIL.value
        assert row.status == TaskStatus.FAILED
        assert row.retry_count == 0
        assert row.error_message == "缺少参考图片"
        assert len(executor.calls) == 1

    async def test_validation_errors_can_be_retried_when_configured(self, session_factory, enqueue):
        task = await enqueue(max_retries=1)
        policy = RetryPolicy(default_classifier(retry_validation_errors=True))
        processor = make_processor(session_factory, ScriptedExecutor([TaskValidationError("bad")]), policy)

        await processor.process_next_task()

        row = await fetch(session_factory, task.id)
        assert row.status == TaskStatus.PENDING
        assert row.retry_count == 1

    async def test_custom_classifier(self, session_factory, enqueue):
        task = await enqueue(max_retries=3)
        policy = RetryPolicy(lambda exc: not isinstance(exc, KeyError))
        processor = make_processor(session_factory, ScriptedExecutor([KeyError("imageUrl")]), policy)

        await processor.process_next_task()

        assert (await fetch(session_factory, task.id)).status == TaskStatus.FAILED

    def test_default_classifier(self):
        is_retryable = default_classifier()

        assert is_retryable(TransientProviderError("x")) is True
        assert is_retryable(RuntimeError("x")) is True
        assert is_retryable(TaskValidationError("x")) is False


@pytest.mark.unit
class TestUpscaleRetryScenario:
    """Upscale job with maxRetries=2 whose provider fails twice, then succeeds."""

    async def test_trace(self, session_factory, storage, enqueue):
        from imgflow.services.executor import StepExecutor

        volc = FakeVolcengine(enhance_errors=[
            TransientProviderError("Concurrent Limit", provider="volcengine"),
            TransientProviderError("HTTP 502", provider="volcengine", status_code=502),
        ])
        registry = FakeRegistry(volcengine=volc)
        executor = StepExecutor(session_factory, storage=storage, registry_factory=lambda lease: registry)
        processor = make_processor(session_factory, executor)
        task = await enqueue(task_type=TaskType.IMAGE_UPSCALING, input_data={"imageUrl": "data:image/png;base64,AAAA"}, max_retries=2)

        trace = []
        for _ in range(3):
            await processor.process_next_task()
            row = await fetch(session_factory, task.id)
            trace.append((row.status, row.retry_count))

        assert trace == [
            (TaskStatus.PENDING, 1),
            (TaskStatus.PENDING, 2),
            (TaskStatus.COMPLETED, 2),
        ]
        final = await fetch(session_factory, task.id)
        assert final.output_data["processedImageUrl"].startswith("/files/user_test/")
        assert final.error_message is None
        assert final.progress == 100
        assert final.completed_steps == final.total_steps
        assert final.processed_image_id == final.output_data["processedImageId"]
        assert len(volc.enhance_calls) == 3
