"""
任务调度服务

把回合 / 重试提交给 Celery，并在 Redis 中记录每个项目的活跃任务，供 API 层调用。
"""
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis
from celery.result import AsyncResult

from bookgen.tasks.celery_app import celery_app

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
ACTIVE_KEY = "bookgen_active_task:{project}"

TASK_RUN_TURN = "bookgen.tasks.turn_tasks.run_turn_task"
TASK_RETRY = "bookgen.tasks.turn_tasks.retry_task"


def _redis() -> redis.Redis:
    """获取同步 Redis 客户端"""
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _active_key(project_id: str) -> str:
    return ACTIVE_KEY.format(project=project_id)


def set_active_task(project_id: str, task_id: str, kind: str):
    """记录活跃任务"""
    payload = {"task_id": task_id, "kind": kind, "started_at": _now_iso()}
    _redis().set(_active_key(project_id), json.dumps(payload))


def get_active_task(project_id: str) -> Optional[Dict[str, Any]]:
    """读取活跃任务信息"""
    raw = _redis().get(_active_key(project_id))
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def clear_active_task(project_id: str):
    """清理活跃任务记录"""
    _redis().delete(_active_key(project_id))


def get_all_active_projects() -> List[str]:
    """扫描 Redis 获取所有有活跃任务的项目ID"""
    prefix = ACTIVE_KEY.format(project="")
    return [key.replace(prefix, "", 1) for key in _redis().scan_iter(ACTIVE_KEY.format(project="*"))]


def submit_turn(project_id: str, user_input: str = "") -> str:
    """
    提交一个回合任务

    Raises:
        ValueError: 当已有活跃任务时
    """
    if get_active_task(project_id):
        raise ValueError("当前已有回合任务在运行")
    task = celery_app.send_task(TASK_RUN_TURN, args=[project_id], kwargs={"user_input": user_input}, queue="turns")
    set_active_task(project_id, task.id, "turn")
    return task.id


def submit_retry(project_id: str) -> str:
    """提交重试任务"""
    if get_active_task(project_id):
        raise ValueError("当前已有回合任务在运行")
    task = celery_app.send_task(TASK_RETRY, args=[project_id], queue="turns")
    set_active_task(project_id, task.id, "retry")
    return task.id


def get_task_status(project_id: str) -> Dict[str, Any]:
    """获取任务状态"""
    active = get_active_task(project_id)
    if not active:
        return {"status": "idle", "task_id": None, "detail": None}

    task_id = active.get("task_id")
    result = AsyncResult(task_id, app=celery_app)
    state = result.state.lower() if result.state else "pending"
    detail = str(result.info) if state == "failure" else None
    return {"status": state, "task_id": task_id, "detail": detail}
