"""
Celery 应用配置

提供:
1. Celery 应用实例
2. Worker 停机处理：把仍在生成中的项目标记为 paused，之后可通过 retry 恢复
"""
import os
import logging

from celery import Celery
from celery.signals import worker_shutting_down

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "bookgen",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["bookgen.tasks.turn_tasks"],
)

# 单队列、JSON 序列化；同一项目的单写者由 generating 租约保证
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_default_queue="turns",
    task_routes={"bookgen.tasks.turn_tasks.*": {"queue": "turns"}},
    task_track_started=True,
    result_expires=24 * 3600,
    worker_concurrency=1,
    broker_connection_retry_on_startup=True,
    worker_pool="solo",
)


@worker_shutting_down.connect
def handle_worker_shutting_down(sig, how, exitcode, **kwargs):
    """Worker 正在关闭时暂停所有活跃项目"""
    logger.warning("⚠️ Worker 正在关闭 (signal=%s, how=%s, exitcode=%s)", sig, how, exitcode)

    from bookgen.services.book_service import get_book_service
    from bookgen.services.task_service import get_all_active_projects

    try:
        service = get_book_service()
        for project_id in get_all_active_projects():
            if service.pause(project_id, reason="worker shutdown"):
                logger.info(f"📍 项目 {project_id} 已标记为 paused")
    except Exception as e:
        logger.error(f"❌ 处理 worker_shutting_down 信号时出错: {e}")
