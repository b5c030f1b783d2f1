"""
Task Queue API Routes

Producers enqueue image tasks here, the UI polls their progress, and
schedulers (cron, recovery) trigger processing.
"""
from typing import List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from imgflow.config import get_settings
from imgflow.database import get_db
from imgflow.middleware.auth import get_user_id, verify_internal_secret
from imgflow.middleware.rate_limit import limiter
from imgflow.models.task import TaskStatus, TaskType
from imgflow.schemas.tasks import (
    INPUT_MODELS,
    DeleteTasksRequest,
    EnqueueTaskRequest,
    TaskIdsRequest,
    WorkerTriggerRequest,
    parse_input,
)
from imgflow.services import task_queue
from imgflow.services.errors import TaskAccessError, TaskValidationError
from imgflow.services.gateway import get_gateway
from imgflow.utils.logger import logger
from imgflow.utils.metrics import get_snapshot
from imgflow.worker import TaskProcessor, get_processor

router = APIRouter()


def _to_item(req: EnqueueTaskRequest) -> dict:
    try:
        parse_input(INPUT_MODELS[req.type], req.input_data)
    except TaskValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "type": req.type,
        "input_data": req.input_data,
        "priority": req.priority,
        "total_steps": req.total_steps,
        "max_retries": req.max_retries if req.max_retries is not None else get_settings().default_max_retries,
    }


@router.post("")
@limiter.limit("60/minute")
async def create_tasks(
    request: Request,
    payload: Union[List[EnqueueTaskRequest], EnqueueTaskRequest] = Body(...),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Enqueue one task, or several when the body is a list.

    inputData is checked against the task type's schema before anything is
    stored; a bad item rejects the whole request.
    """
    if isinstance(payload, list):
        if not payload:
            raise HTTPException(status_code=400, detail="缺少必要参数：type, inputData")
        items = [_to_item(req) for req in payload]
        tasks = await task_queue.enqueue_tasks(db, user_id, items)
        return {"success": True, "tasks": [t.to_snapshot() for t in tasks]}

    item = _to_item(payload)
    task = await task_queue.enqueue_task(
        db,
        user_id,
        item["type"],
        item["input_data"],
        priority=item["priority"],
        total_steps=item["total_steps"],
        max_retries=item["max_retries"],
    )
    return {"success": True, "task": task.to_snapshot()}


@router.get("")
async def list_tasks(
    status: Optional[TaskStatus] = None,
    task_type: Optional[TaskType] = Query(None, alias="type"),
    ids: Optional[str] = Query(None, description="Comma separated task ids"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's tasks; ``ids`` turns this into a batch status poll."""
    id_list = [i.strip() for i in ids.split(",") if i.strip()] if ids else None
    tasks, total = await task_queue.list_tasks(
        db, user_id=user_id, status=status, task_type=task_type, ids=id_list, limit=limit, offset=offset
    )
    return {
        "success": True,
        "tasks": [t.to_snapshot() for t in tasks],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        },
    }


@router.delete("")
async def delete_tasks(
    body: DeleteTasksRequest,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Delete the listed tasks, or all of the caller's tasks with ``deleteAll``. Running tasks are kept."""
    if not body.delete_all and not body.task_ids:
        raise HTTPException(status_code=400, detail="请提供要删除的任务ID列表或设置deleteAll为true")
    try:
        deleted = await task_queue.delete_tasks(db, user_id, body.task_ids, delete_all=body.delete_all)
    except TaskAccessError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    return {"success": True, "message": f"已删除 {deleted} 个任务", "deletedCount": deleted}


@router.get("/stats")
async def task_stats(
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return {"success": True, "stats": await task_queue.get_stats(db, user_id=user_id)}


@router.get("/metrics")
async def task_metrics(_: None = Depends(verify_internal_secret)):
    """Counters, provider latencies and circuit breaker states"""
    return {**get_snapshot(), "circuits": get_gateway().get_circuit_states()}


# ---------------------------------------------------------------------------
# Processing triggers
# ---------------------------------------------------------------------------

@router.post("/worker")
@limiter.limit("30/minute")
async def trigger_worker(
    request: Request,
    body: Optional[WorkerTriggerRequest] = Body(None),
    processor: TaskProcessor = Depends(get_processor),
    _: None = Depends(verify_internal_secret),
):
    """Process the next pending task, or drain the queue with ``{"batch": true}``."""
    body = body or WorkerTriggerRequest()
    try:
        if body.batch:
            result = await processor.drain(body.max_tasks, body.max_rounds)
        else:
            result = await processor.process_next_task()
    except Exception as e:
        logger.error(f"Task processor error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"任务处理失败: {e}")
    return {"success": True, **result}


@router.get("/worker")
async def worker_status(
    processor: TaskProcessor = Depends(get_processor),
    db: AsyncSession = Depends(get_db),
):
    """Queue counts plus the five most recently updated tasks"""
    return {
        "success": True,
        "isProcessing": processor.is_processing,
        "stats": await task_queue.get_stats(db),
        "recentTasks": await task_queue.recent_tasks(db, limit=5),
    }


@router.api_route("/cron", methods=["GET", "POST"])
async def cron_trigger(
    processor: TaskProcessor = Depends(get_processor),
    _: None = Depends(verify_internal_secret),
):
    """Entry point for external schedulers: one bounded batch drain."""
    try:
        result = await processor.drain()
    except Exception as e:
        logger.error(f"Cron drain failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"定时任务处理失败: {e}")
    return {"success": True, **result, "message": "定时任务处理完成"}


@router.post("/recover")
async def recover_tasks(
    background_tasks: BackgroundTasks,
    processor: TaskProcessor = Depends(get_processor),
    _: None = Depends(verify_internal_secret),
):
    """Requeue tasks left PROCESSING by a restart, then kick off a drain."""
    result = await processor.recover()
    if result.get("recovered"):
        background_tasks.add_task(processor.drain)
    message = "任务恢复完成" if result.get("total") else "没有需要恢复的任务"
    return {"success": True, "message": message, **result}


@router.get("/recover")
async def stuck_tasks(
    db: AsyncSession = Depends(get_db),
    _: None = Depends(verify_internal_secret),
):
    stuck = await task_queue.list_stuck_tasks(db)
    return {"success": True, "count": len(stuck), "tasks": stuck}


@router.post("/retry")
async def rerun_tasks(
    body: TaskIdsRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    processor: TaskProcessor = Depends(get_processor),
    db: AsyncSession = Depends(get_db),
):
    """Re-run finished tasks as new PENDING copies (originals stay as they are)."""
    clones = await task_queue.rerun_tasks(db, user_id, body.task_ids)
    if not clones:
        raise HTTPException(status_code=404, detail="没有可重新运行的任务")
    background_tasks.add_task(processor.drain)
    return {
        "success": True,
        "message": f"已创建 {len(clones)} 个新任务",
        "count": len(clones),
        "tasks": [t.to_snapshot() for t in clones],
    }


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    task = await task_queue.get_task(db, task_id, user_id=user_id)
    if not task:
        raise HTTPException(status_code=404, detail="任务不存在")
    return {"success": True, "task": task.to_snapshot()}
