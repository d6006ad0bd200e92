"""
回合 / 审批 / 恢复 API 路由
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from bookgen.api.deps import get_service
from bookgen.api.schemas.book import PauseResponse, RejectRequest, TurnRequest
from bookgen.api.schemas.common import MessageResponse
from bookgen.models import ApprovalResult, ResumeState, RetryOutcome, TurnResult
from bookgen.services import task_service
from bookgen.services.book_service import BookService

router = APIRouter(prefix="/api", tags=["turns"])


@router.post("/books/{book_id}/turns", response_model=TurnResult)
def run_turn(book_id: str, body: TurnRequest, service: BookService = Depends(get_service)):
    """运行一个回合

    回合内的错误在 TurnResult.error 中返回（HTTP 200）；background=true 时提交到 Celery
    """
    service.get_project(book_id)
    if body.background:
        try:
            task_id = task_service.submit_turn(book_id, body.user_input)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=MessageResponse(message="回合已提交", task_id=task_id).model_dump(),
        )
    return service.run_turn(book_id, body.user_input, timeout=body.timeout)


@router.post("/approvals/{pending_id}/approve", response_model=ApprovalResult)
def approve(pending_id: str, service: BookService = Depends(get_service)):
    """批准挂起的工具调用"""
    return service.approve(pending_id)


@router.post("/approvals/{pending_id}/reject", response_model=ApprovalResult)
def reject(pending_id: str, body: RejectRequest, service: BookService = Depends(get_service)):
    """拒绝挂起的工具调用"""
    return service.reject(pending_id, body.reason)


@router.get("/books/{book_id}/resume", response_model=ResumeState)
def get_resume_state(book_id: str, service: BookService = Depends(get_service)):
    """恢复状态"""
    return service.get_resume_state(book_id)


@router.post("/books/{book_id}/retry", response_model=RetryOutcome)
def retry(book_id: str, service: BookService = Depends(get_service)):
    """重试失败/暂停的项目（达到上限时 can_resume=false 且不运行回合）"""
    return service.retry(book_id)


@router.post("/books/{book_id}/retries/reset", response_model=ResumeState)
def reset_retries(book_id: str, service: BookService = Depends(get_service)):
    """重试耗尽后人工清零重试次数"""
    return service.reset_retries(book_id)


@router.post("/books/{book_id}/pause", response_model=PauseResponse)
def pause(book_id: str, service: BookService = Depends(get_service)):
    """暂停项目"""
    return PauseResponse(paused=service.pause(book_id))


@router.get("/books/{book_id}/task")
def task_status(book_id: str):
    """后台任务状态"""
    return task_service.get_task_status(book_id)
