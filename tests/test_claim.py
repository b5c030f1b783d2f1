import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from imgflow.models.provider_credential import ProviderCredential
from imgflow.models.task import TaskQueue, TaskStatus, TaskType
from imgflow.services import task_queue

from conftest import fetch


@pytest.mark.unit
class TestClaimOrdering:
    """Claim picks priority desc, then oldest first."""

    async def test_highest_priority_first(self, db, enqueue):
        low = await enqueue(priority=1)
        high = await enqueue(priority=5)
        mid = await enqueue(priority=3)

        claimed = [await task_queue.claim_next_task(db) for _ in range(3)]

        assert [lease.task_id for lease in claimed] == [high.id, mid.id, low.id]

    async def test_equal_priority_is_fifo(self, db, enqueue):
        tasks = [await enqueue(priority=2) for _ in range(4)]

        claimed = [(await task_queue.claim_next_task(db)).task_id for _ in range(4)]

        assert claimed == [t.id for t in tasks]

    async def test_fifo_uses_created_at_not_insert_order(self, db, enqueue):
        first = await enqueue()
        second = await enqueue()
        # Backdate the second task so it is the oldest
        await db.execute(
            update(TaskQueue)
            .where(TaskQueue.id == second.id)
            .values(created_at=first.created_at - timedelta(minutes=5))
        )
        await db.commit()

        lease = await task_queue.claim_next_task(db)

        assert lease.task_id == second.id

    async def test_empty_queue_returns_none(self, db):
        assert await task_queue.claim_next_task(db) is None

    async def test_claim_marks_processing(self, db, enqueue, session_factory):
        task = await enqueue(task_type=TaskType.IMAGE_UPSCALING, input_data={"imageUrl": "http://x/a.jpg"})

        lease = await task_queue.claim_next_task(db)

        row = await fetch(session_factory, task.id)
        assert lease.task_id == task.id
        assert lease.type == TaskType.IMAGE_UPSCALING
        assert lease.retry_count == 0
        assert row.status == TaskStatus.PROCESSING
        assert row.started_at is not None
        assert row.current_step == task_queue.STEP_STARTED
        assert row.progress == 0


@pytest.mark.unit
class TestClaimExclusion:
    """A claimed task is never handed out twice."""

    async def test_back_to_back_claims_differ(self, db, enqueue):
        await enqueue()
        await enqueue()

        first = await task_queue.claim_next_task(db)
        second = await task_queue.claim_next_task(db)

        assert first.task_id != second.task_id

    async def test_concurrent_claims_differ(self, session_factory, enqueue):
        for _ in range(3):
            await enqueue()

        async def claim():
            async with session_factory() as session:
                return await task_queue.claim_next_task(session)

        leases = await asyncio.gather(*(claim() for _ in range(3)))

        assert len({lease.task_id for lease in leases}) == 3

    async def test_single_task_claimed_once(self, db, enqueue):
        await enqueue()

        first = await task_queue.claim_next_task(db)
        second = await task_queue.claim_next_task(db)

        assert first is not None
        assert second is None

    async def test_lost_race_returns_none(self, db, enqueue):
        """Another worker already flipped the row: the conditional update matches nothing."""
        task = await enqueue()
        await db.execute(
            update(TaskQueue).where(TaskQueue.id == task.id).values(status=TaskStatus.PROCESSING)
        )
        await db.commit()

        assert await task_queue.claim_task(db, task.id) is None

    async def test_terminal_tasks_not_claimed(self, db, enqueue):
        task = await enqueue()
        await db.execute(update(TaskQueue).where(TaskQueue.id == task.id).values(status=TaskStatus.FAILED))
        await db.commit()

        assert await task_queue.claim_next_task(db) is None


@pytest.mark.unit
class TestClaimLock:
    def test_contended_lock_works_again_in_a_new_event_loop(self):
        async def contend():
            lock = task_queue.claim_lock()

            async def hold():
                async with lock:
                    await asyncio.sleep(0.01)

            await asyncio.gather(hold(), hold())
            return lock

        first = asyncio.run(contend())
        second = asyncio.run(contend())

        assert first is not second

    async def test_same_lock_within_a_loop(self):
        assert task_queue.claim_lock() is task_queue.claim_lock()


@pytest.mark.unit
class TestCredentialInjection:
    async def test_enabled_credentials_injected_into_lease_only(self, db, enqueue, session_factory):
        task = await enqueue(user_id="user_a")
        db.add_all([
            ProviderCredential(user_id="user_a", provider="volcengine", access_key="AK", secret_key="SK"),
            ProviderCredential(user_id="user_a", provider="gpt", api_key="sk-disabled", enabled=False),
            ProviderCredential(user_id="user_b", provider="gemini", api_key="other-user"),
        ])
        await db.commit()

        lease = await task_queue.claim_next_task(db)

        assert lease.input_data["providerCredentials"] == {
            "volcengine": {"accessKey": "AK", "secretKey": "SK"}
        }
        row = await fetch(session_factory, task.id)
        assert "providerCredentials" not in row.input_data

    async def test_no_credentials_leaves_input_untouched(self, db, enqueue):
        await enqueue(input_data={"imageUrl": "http://x/a.png"})

        lease = await task_queue.claim_next_task(db)

        assert lease.input_data == {"imageUrl": "http://x/a.png"}
