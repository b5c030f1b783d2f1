"""
Database-backed image task queue.

Usage:
    task = await task_queue.enqueue_task(db, user_id, TaskType.WATERMARK, {...})
    lease = await task_queue.claim_next_task(db)
    await task_queue.update_progress(db, lease, 50, "处理中...")
    await task_queue.complete_task(db, lease, output_data, processed_image_id)

Every write made on behalf of a running attempt is fenced on the lease: it only
lands while the row is still PROCESSING with the retry_count seen at claim
time. An attempt abandoned by the timeout guard therefore cannot overwrite the
state of a later attempt.
"""
import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imgflow.models.provider_credential import ProviderCredential
from imgflow.models.task import TERMINAL_STATUSES, TaskQueue, TaskStatus, TaskType, utcnow
from imgflow.services.errors import TaskAccessError
from imgflow.utils.logger import logger

STEP_CREATED = "任务已创建，等待处理"
STEP_RERUN = "任务已创建，等待处理（重新运行）"
STEP_STARTED = "开始处理任务"
STEP_COMPLETED = "处理完成"

# Candidates inspected per claim before giving up on a contended queue
CLAIM_CANDIDATES = 5

# Process-local guard, one per event loop; the conditional UPDATE covers other processes
_claim_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()


def claim_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _claim_locks.get(loop)
    if lock is None:
        lock = _claim_locks[loop] = asyncio.Lock()
    return lock


@dataclass
class TaskLease:
    """A claimed attempt. Detached from the session and safe to pass around."""
    task_id: str
    user_id: str
    type: TaskType
    input_data: Dict[str, Any]
    priority: int
    retry_count: int
    max_retries: int
    total_steps: int
    created_at: Optional[datetime] = None
    credentials: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def attempt(self) -> int:
        return self.retry_count + 1


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def default_total_steps(task_type: TaskType) -> int:
    return 4 if task_type == TaskType.ONE_CLICK_WORKFLOW else 1


def lease_filter(lease: TaskLease):
    return and_(
        TaskQueue.id == lease.task_id,
        TaskQueue.status == TaskStatus.PROCESSING,
        TaskQueue.retry_count == lease.retry_count,
    )


# ---------------------------------------------------------------------------
# Producers
# ---------------------------------------------------------------------------

def _new_task(
    user_id: str,
    task_type: TaskType,
    input_data: Dict[str, Any],
    priority: int = 1,
    total_steps: Optional[int] = None,
    max_retries: int = 3,
    current_step: str = STEP_CREATED,
) -> TaskQueue:
    return TaskQueue(
        user_id=user_id,
        type=task_type,
        status=TaskStatus.PENDING,
        priority=priority,
        input_data=input_data,
        progress=0,
        current_step=current_step,
        total_steps=total_steps or default_total_steps(task_type),
        completed_steps=0,
        retry_count=0,
        max_retries=max_retries,
        created_at=utcnow(),
    )


async def enqueue_task(
    db: AsyncSession,
    user_id: str,
    task_type: TaskType,
    input_data: Dict[str, Any],
    priority: int = 1,
    total_steps: Optional[int] = None,
    max_retries: int = 3,
) -> TaskQueue:
    """Create a PENDING task and return it"""
    task = _new_task(user_id, task_type, input_data, priority, total_steps, max_retries)
    db.add(task)
    await db.commit()
    logger.info(
        "task.enqueued",
        extra={"task_id": task.id, "task_type": task_type.value, "user_id": user_id, "priority": priority},
    )
    return task


async def enqueue_tasks(db: AsyncSession, user_id: str, items: Sequence[Dict[str, Any]]) -> List[TaskQueue]:
    """
    Create several tasks in one transaction.

    Each item holds ``type``, ``input_data`` and optionally ``priority``,
    ``total_steps`` and ``max_retries``.
    """
    tasks = [
        _new_task(
            user_id,
            item["type"],
            item["input_data"],
            priority=item.get("priority", 1),
            total_steps=item.get("total_steps"),
            max_retries=item.get("max_retries", 3),
        )
        for item in items
    ]
    db.add_all(tasks)
    await db.commit()
    logger.info(f"task.enqueued_batch count={len(tasks)}", extra={"user_id": user_id})
    return tasks


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

async def get_task(db: AsyncSession, task_id: str, user_id: Optional[str] = None) -> Optional[TaskQueue]:
    query = select(TaskQueue).where(TaskQueue.id == task_id)
    if user_id:
        query = query.where(TaskQueue.user_id == user_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def list_tasks(
    db: AsyncSession,
    user_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    task_type: Optional[TaskType] = None,
    ids: Optional[Sequence[str]] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[TaskQueue], int]:
    """Return (page, total) ordered by priority desc, newest first."""
    conditions = []
    if user_id:
        conditions.append(TaskQueue.user_id == user_id)
    if status:
        conditions.append(TaskQueue.status == status)
    if task_type:
        conditions.append(TaskQueue.type == task_type)
    if ids:
        conditions.append(TaskQueue.id.in_(list(ids)))

    total = await db.scalar(select(func.count()).select_from(TaskQueue).where(*conditions))
    result = await db.execute(
        select(TaskQueue)
        .where(*conditions)
        .order_by(TaskQueue.priority.desc(), TaskQueue.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def get_stats(db: AsyncSession, user_id: Optional[str] = None) -> Dict[str, int]:
    """Task counts by status"""
    query = select(TaskQueue.status, func.count()).group_by(TaskQueue.status)
    if user_id:
        query = query.where(TaskQueue.user_id == user_id)
    rows = (await db.execute(query)).all()
    counts = {status.value: count for status, count in rows}

    stats = {s.value.lower(): counts.get(s.value, 0) for s in TaskStatus}
    stats["total"] = sum(counts.values())
    return stats


async def recent_tasks(db: AsyncSession, limit: int = 5, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(TaskQueue).order_by(TaskQueue.updated_at.desc()).limit(limit)
    if user_id:
        query = query.where(TaskQueue.user_id == user_id)
    result = await db.execute(query)
    return [
        {
            "id": t.id,
            "type": t.type.value,
            "status": t.status.value,
            "progress": t.progress,
            "currentStep": t.current_step,
            "updatedAt": t.updated_at.isoformat() if t.updated_at else None,
        }
        for t in result.scalars().all()
    ]


async def peek_pending_ids(db: AsyncSession, limit: int) -> List[str]:
    """Ids of the next pending tasks in claim order, without claiming them."""
    result = await db.execute(
        select(TaskQueue.id)
        .where(TaskQueue.status == TaskStatus.PENDING)
        .order_by(TaskQueue.priority.desc(), TaskQueue.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------

async def _load_credentials(db: AsyncSession, user_id: str) -> Dict[str, Dict[str, str]]:
    result = await db.execute(
        select(ProviderCredential).where(
            ProviderCredential.user_id == user_id,
            ProviderCredential.enabled.is_(True),
        )
    )
    return {row.provider: row.to_injected() for row in result.scalars().all()}


async def claim_task(db: AsyncSession, task_id: str) -> Optional[TaskLease]:
    """
    Try to move one specific task from PENDING to PROCESSING.

    Conditional UPDATE; returns None when another claimer got there first.
    """
    now = utcnow()
    result = await db.execute(
        update(TaskQueue)
        .where(TaskQueue.id == task_id, TaskQueue.status == TaskStatus.PENDING)
        .values(
            status=TaskStatus.PROCESSING,
            started_at=now,
            current_step=STEP_STARTED,
            progress=0,
            completed_steps=0,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None

    task = await db.get(TaskQueue, task_id, populate_existing=True)
    credentials = await _load_credentials(db, task.user_id)
    input_data = dict(task.input_data or {})
    if credentials:
        # Injected into the lease only, never written back to the row
        input_data["providerCredentials"] = credentials
    # Release the read transaction so other claimers are not held up
    await db.commit()

    logger.info(
        "task.claimed",
        extra={
            "task_id": task.id,
            "task_type": task.type.value,
            "attempt": task.retry_count + 1,
            "max_retries": task.max_retries,
        },
    )
    return TaskLease(
        task_id=task.id,
        user_id=task.user_id,
        type=task.type,
        input_data=input_data,
        priority=task.priority,
        retry_count=task.retry_count,
        max_retries=task.max_retries,
        total_steps=task.total_steps,
        created_at=task.created_at,
        credentials=credentials,
    )


async def claim_next_task(db: AsyncSession) -> Optional[TaskLease]:
    """
    Claim the highest-priority, oldest pending task.

    Serialized in-process by a lock; a candidate lost to another process is
    skipped in favour of the next one.
    """
    async with claim_lock():
        for task_id in await peek_pending_ids(db, CLAIM_CANDIDATES):
            lease = await claim_task(db, task_id)
            if lease:
                return lease
            logger.info("task.claim_lost", extra={"task_id": task_id})
    return None


# ---------------------------------------------------------------------------
# Attempt writes (fenced)
# ---------------------------------------------------------------------------

async def update_progress(
    db: AsyncSession,
    lease: TaskLease,
    progress: int,
    current_step: str,
    completed_steps: Optional[int] = None,
) -> bool:
    """Record step and percentage. Progress never moves backwards within an attempt."""
    progress = max(0, min(int(progress), 100))
    values: Dict[str, Any] = {
        "current_step": current_step,
        "progress": case((TaskQueue.progress > progress, TaskQueue.progress), else_=progress),
        "updated_at": utcnow(),
    }
    if completed_steps is not None:
        values["completed_steps"] = completed_steps

    result = await db.execute(
        update(TaskQueue).where(lease_filter(lease)).values(**values).execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.warning("task.progress_fenced", extra={"task_id": lease.task_id, "attempt": lease.attempt})
        return False
    return True


async def complete_task(
    db: AsyncSession,
    lease: TaskLease,
    output_data: Dict[str, Any],
    processed_image_id: Optional[str] = None,
) -> bool:
    """Mark the attempt's task COMPLETED with its output"""
    now = utcnow()
    result = await db.execute(
        update(TaskQueue)
        .where(lease_filter(lease))
        .values(
            status=TaskStatus.COMPLETED,
            progress=100,
            current_step=STEP_COMPLETED,
            completed_steps=lease.total_steps,
            output_data=output_data,
            error_message=None,
            processed_image_id=processed_image_id,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.warning("task.complete_fenced", extra={"task_id": lease.task_id, "attempt": lease.attempt})
        return False
    logger.info("task.completed", extra={"task_id": lease.task_id, "attempt": lease.attempt})
    return True


async def read_position(db: AsyncSession, task_id: str) -> Tuple[Optional[str], Optional[int]]:
    """Last recorded (current_step, progress), for timeout diagnostics."""
    row = (
        await db.execute(select(TaskQueue.current_step, TaskQueue.progress).where(TaskQueue.id == task_id))
    ).first()
    if row is None:
        return None, None
    return row[0], row[1]


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

async def list_stuck_tasks(db: AsyncSession) -> List[Dict[str, Any]]:
    """PROCESSING tasks with how long they have been running"""
    result = await db.execute(
        select(TaskQueue).where(TaskQueue.status == TaskStatus.PROCESSING).order_by(TaskQueue.started_at.asc())
    )
    now = utcnow()
    stuck = []
    for task in result.scalars().all():
        started = as_utc(task.started_at)
        stuck.append({
            "id": task.id,
            "type": task.type.value,
            "currentStep": task.current_step,
            "progress": task.progress,
            "retryCount": task.retry_count,
            "maxRetries": task.max_retries,
            "startedAt": started.isoformat() if started else None,
            "stuckMinutes": int((now - started).total_seconds() // 60) if started else None,
        })
    return stuck


async def recover_stuck_tasks(db: AsyncSession) -> Dict[str, Any]:
    """
    Return tasks left PROCESSING by a crash or restart to the queue.

    Only safe while no attempt is running in any worker; callers check that.
    """
    result = await db.execute(select(TaskQueue).where(TaskQueue.status == TaskStatus.PROCESSING))
    stuck = list(result.scalars().all())
    recovered, failed = 0, 0
    details = []
    now = utcnow()

    for task in stuck:
        if task.retry_count < task.max_retries:
            attempt = task.retry_count + 1
            task.status = TaskStatus.PENDING
            task.retry_count = attempt
            task.progress = 0
            task.started_at = None
            task.current_step = f"任务恢复中（第 {attempt} 次重试）"
            task.error_message = f"服务重启导致任务中断，自动重试 ({attempt}/{task.max_retries})"
            recovered += 1
            details.append({"id": task.id, "action": "recovered"})
        else:
            task.status = TaskStatus.FAILED
            task.completed_at = now
            task.error_message = (
                f"任务重试次数已达上限 ({task.max_retries} 次)，最后状态: {task.current_step or '未知'}"
            )
            task.current_step = "重试次数已达上限"
            failed += 1
            details.append({"id": task.id, "action": "failed", "reason": f"超过最大重试次数 ({task.max_retries})"})

    await db.commit()
    if stuck:
        logger.info(
            f"task.recovery recovered={recovered} failed={failed}",
            extra={"recovered": recovered, "failed": failed},
        )
    return {"recovered": recovered, "failed": failed, "total": len(stuck), "tasks": details}


async def rerun_tasks(db: AsyncSession, user_id: str, task_ids: Sequence[str]) -> List[TaskQueue]:
    """Clone finished tasks into fresh PENDING ones. The originals are untouched."""
    result = await db.execute(
        select(TaskQueue).where(
            TaskQueue.id.in_(list(task_ids)),
            TaskQueue.user_id == user_id,
            TaskQueue.status.in_(TERMINAL_STATUSES),
        )
    )
    clones = [
        _new_task(
            user_id,
            original.type,
            dict(original.input_data or {}),
            priority=original.priority,
            total_steps=original.total_steps,
            max_retries=original.max_retries,
            current_step=STEP_RERUN,
        )
        for original in result.scalars().all()
    ]
    db.add_all(clones)
    await db.commit()
    logger.info(f"task.rerun count={len(clones)}", extra={"user_id": user_id})
    return clones


async def delete_tasks(
    db: AsyncSession,
    user_id: str,
    task_ids: Optional[Sequence[str]] = None,
    delete_all: bool = False,
) -> int:
    """
    Delete the caller's tasks, either the listed ids or all of them.

    Listed ids must all belong to the caller, otherwise nothing is deleted and
    TaskAccessError is raised. PROCESSING tasks are never deleted; they are
    skipped and left for their running attempt to finish.
    """
    scope = [TaskQueue.user_id == user_id, TaskQueue.status != TaskStatus.PROCESSING]
    if not delete_all:
        wanted = set(task_ids or [])
        owned = await db.scalar(
            select(func.count()).select_from(TaskQueue).where(
                TaskQueue.id.in_(list(wanted)), TaskQueue.user_id == user_id
            )
        )
        if owned != len(wanted):
            raise TaskAccessError("部分任务不存在或无权限删除")
        scope.append(TaskQueue.id.in_(list(wanted)))

    result = await db.execute(delete(TaskQueue).where(*scope).execution_options(synchronize_session=False))
    await db.commit()
    logger.info("task.deleted", extra={"user_id": user_id, "deleted": result.rowcount})
    return result.rowcount


async def cleanup_old_tasks(db: AsyncSession, max_age_hours: int = 72) -> int:
    """Delete COMPLETED/FAILED tasks older than max_age_hours. Returns count deleted."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    result = await db.execute(
        delete(TaskQueue)
        .where(TaskQueue.status.in_(TERMINAL_STATUSES), TaskQueue.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount
    if count > 0:
        logger.info("task.cleanup", extra={"deleted": count})
    return count
