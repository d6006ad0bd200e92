"""
FastAPI 应用入口
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from bookgen.api.routes import books, turns
from bookgen.errors import BookGenError
from bookgen.models import ErrorKind

logger = logging.getLogger(__name__)

app = FastAPI(title="BookGen API", version="0.1.0")

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.APPROVAL_PENDING: 409,
    ErrorKind.BUSY: 409,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.MALFORMED_PROJECT: 422,
}


@app.exception_handler(BookGenError)
async def bookgen_error_handler(request: Request, exc: BookGenError):
    """领域异常 -> HTTP 状态码"""
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, 400),
        content={"detail": exc.message, "error_code": exc.kind.value.upper()},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    """统一 HTTP 异常格式"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": "HTTP_ERROR"},
    )


@app.exception_handler(Exception)
async def generic_error_handler(request: Request, exc: Exception):
    """兜底异常处理"""
    logger.exception("未处理的异常")
    return JSONResponse(
        status_code=500,
        content={"detail": "服务器内部错误", "error_code": "SERVER_ERROR"},
    )


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "ok"}


app.include_router(books.router)
app.include_router(turns.router)
