"""
回合相关 Celery 任务

提供:
1. run_turn_task - 运行一个回合
2. retry_task - 重试失败/暂停的项目

任务结果是 TurnResult / RetryOutcome 的 JSON 形式；回合内的错误已经在 TurnResult.error 中，
只有基础设施异常才会让任务失败
"""
from typing import Any, Dict

from celery.utils.log import get_task_logger

from bookgen.services.book_service import get_book_service
from bookgen.services.task_service import TASK_RETRY, TASK_RUN_TURN, clear_active_task
from bookgen.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name=TASK_RUN_TURN, bind=True)
def run_turn_task(self, project_id: str, user_input: str = "") -> Dict[str, Any]:
    """运行一个回合"""
    logger.info(f"开始回合: {project_id}")
    try:
        result = get_book_service().run_turn(project_id, user_input)
        if result.error:
            logger.warning(f"⚠️ 回合结束但有错误: {result.error.kind.value} {result.error.message}")
        return result.model_dump(mode="json")
    except Exception:
        logger.exception("回合任务失败")
        raise
    finally:
        clear_active_task(project_id)


@celery_app.task(name=TASK_RETRY, bind=True)
def retry_task(self, project_id: str) -> Dict[str, Any]:
    """重试失败/暂停的项目"""
    logger.info(f"重试项目: {project_id}")
    try:
        outcome = get_book_service().retry(project_id)
        if not outcome.resume.can_resume and outcome.turn is None:
            logger.warning(f"⚠️ 项目 {project_id} 已达到重试上限")
        return outcome.model_dump(mode="json")
    except Exception:
        logger.exception("重试任务失败")
        raise
    finally:
        clear_active_task(project_id)
