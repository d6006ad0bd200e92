"""
API 依赖定义

提供书籍服务依赖，测试中可通过 app.dependency_overrides 替换
"""
from bookgen.services.book_service import BookService, get_book_service


def get_service() -> BookService:
    """提供进程级共享的书籍服务"""
    return get_book_service()
