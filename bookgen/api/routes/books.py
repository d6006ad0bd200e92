"""
书籍管理 API 路由
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from bookgen.api.deps import get_service
from bookgen.api.schemas.book import (
    BookDetailResponse,
    BookSummary,
    ChapterListResponse,
    CreateBookRequest,
    PhaseResponse,
    RevertRequest,
)
from bookgen.errors import MalformedProjectError
from bookgen.models import Chapter, ChapterVersion, Checkpoint, Phase
from bookgen.services.book_service import BookService

router = APIRouter(prefix="/api/books", tags=["books"])


def _safe_phase(service: BookService, project_id: str) -> Optional[Phase]:
    try:
        return service.resolve_phase(project_id)
    except MalformedProjectError:
        return None


@router.get("", response_model=List[BookSummary])
def list_books(service: BookService = Depends(get_service)):
    """书籍列表"""
    return [BookSummary.from_project(p, _safe_phase(service, p.id)) for p in service.list_projects()]


@router.post("", response_model=BookDetailResponse, status_code=status.HTTP_201_CREATED)
def create_book(body: CreateBookRequest, service: BookService = Depends(get_service)):
    """创建书籍"""
    project = service.create_project(body.title, body.type, body.mode)
    return BookDetailResponse(
        summary=BookSummary.from_project(project, service.resolve_phase(project.id)),
        project=project,
    )


@router.get("/{book_id}", response_model=BookDetailResponse)
def get_book(book_id: str, service: BookService = Depends(get_service)):
    """书籍详情"""
    project = service.get_project(book_id)
    return BookDetailResponse(
        summary=BookSummary.from_project(project, _safe_phase(service, book_id)),
        project=project,
        pending_approval=service.get_pending(book_id),
    )


@router.get("/{book_id}/phase", response_model=PhaseResponse)
def get_phase(book_id: str, service: BookService = Depends(get_service)):
    """当前阶段（数据非法时返回 422）"""
    return PhaseResponse(phase=service.resolve_phase(book_id))


@router.get("/{book_id}/chapters", response_model=ChapterListResponse)
def list_chapters(book_id: str, service: BookService = Depends(get_service)):
    """章节列表"""
    chapters = service.list_chapters(book_id)
    return ChapterListResponse(items=chapters, total=len(chapters))


@router.get("/{book_id}/chapters/{chapter_number}/versions", response_model=List[ChapterVersion])
def list_chapter_versions(book_id: str, chapter_number: int, service: BookService = Depends(get_service)):
    """章节历史版本"""
    return service.list_chapter_versions(book_id, chapter_number)


@router.post("/{book_id}/chapters/{chapter_number}/revert", response_model=Chapter)
def revert_chapter(book_id: str, chapter_number: int, body: RevertRequest, service: BookService = Depends(get_service)):
    """恢复章节到历史版本"""
    return service.revert_chapter(book_id, chapter_number, body.version_number)


@router.get("/{book_id}/checkpoints", response_model=List[Checkpoint])
def list_checkpoints(book_id: str, service: BookService = Depends(get_service)):
    """检查点列表"""
    return service.list_checkpoints(book_id)
