import pytest

from imgflow.models.task import TaskStatus
from imgflow.services import task_queue
from imgflow.services.progress import ProgressReporter

from conftest import fetch


@pytest.fixture
async def lease(db, enqueue):
    await enqueue()
    return await task_queue.claim_next_task(db)


@pytest.mark.unit
class TestProgressReporter:
    async def test_write_visible_to_other_sessions(self, session_factory, lease):
        report = ProgressReporter(lease, session_factory)

        assert await report("步骤1/4：开始背景替换", 5, 0) is True

        row = await fetch(session_factory, lease.task_id)
        assert row.progress == 5
        assert row.current_step == "步骤1/4：开始背景替换"
        assert row.completed_steps == 0

    async def test_progress_never_goes_backwards(self, session_factory, lease):
        report = ProgressReporter(lease, session_factory)
        seen = []

        for step, pct in [("a", 10), ("b", 40), ("c", 25), ("d", 60), ("e", 5)]:
            await report(step, pct)
            seen.append((await fetch(session_factory, lease.task_id)).progress)

        assert seen == [10, 40, 40, 60, 60]
        assert report.last_progress == 60

    async def test_step_text_still_updates_on_lower_progress(self, session_factory, lease):
        report = ProgressReporter(lease, session_factory)

        await report("上传中", 50)
        await report("重新连接", 30)

        row = await fetch(session_factory, lease.task_id)
        assert row.current_step == "重新连接"
        assert row.progress == 50

    async def test_clamped_to_100(self, session_factory, lease):
        report = ProgressReporter(lease, session_factory)

        await report("完成", 150)

        assert (await fetch(session_factory, lease.task_id)).progress == 100

    async def test_completed_steps_left_alone_when_omitted(self, session_factory, lease):
        report = ProgressReporter(lease, session_factory)

        await report("步骤2/4：扩图完成", 50, 2)
        await report("保存中", 60)

        assert (await fetch(session_factory, lease.task_id)).completed_steps == 2


@pytest.mark.unit
class TestStoredProgress:
    async def test_database_guard_against_regression(self, db, session_factory, lease):
        """A second reporter for the same attempt cannot pull stored progress down."""
        await task_queue.update_progress(db, lease, 70, "高清化处理中...")
        await task_queue.update_progress(db, lease, 20, "重试下载")

        assert (await fetch(session_factory, lease.task_id)).progress == 70

    async def test_negative_clamped_to_zero(self, db, session_factory, lease):
        await task_queue.update_progress(db, lease, -5, "开始")

        assert (await fetch(session_factory, lease.task_id)).progress == 0

    async def test_no_writes_after_completion(self, db, session_factory, lease):
        await task_queue.complete_task(db, lease, {"processedImageUrl": "/files/u/a.png"})

        applied = await task_queue.update_progress(db, lease, 50, "迟到")

        row = await fetch(session_factory, lease.task_id)
        assert applied is False
        assert row.status == TaskStatus.COMPLETED
        assert row.progress == 100
        assert row.current_step == task_queue.STEP_COMPLETED

    async def test_retry_resets_progress_for_next_attempt(self, db, session_factory, lease):
        from imgflow.services.retry_policy import RetryPolicy

        await task_queue.update_progress(db, lease, 80, "处理中")
        await RetryPolicy().on_failure(db, lease, RuntimeError("boom"))
        next_lease = await task_queue.claim_next_task(db)

        await task_queue.update_progress(db, next_lease, 10, "重新开始")

        assert (await fetch(session_factory, lease.task_id)).progress == 10
