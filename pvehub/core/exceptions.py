"""
全局异常处理模块 (Global Exception Handling Module)

定义集群调度引擎的异常体系和 FastAPI 全局异常处理器，提供统一的错误响应格式。
认证失败、瞬时故障等端点级错误在连接状态边界被吸收，只有调用方显式请求的操作才会看到异常。

Defines the engine's exception taxonomy and FastAPI global exception handlers,
providing a unified error response format. Endpoint-level failures (auth, transient)
are absorbed at the connection-status boundary; callers only see them for operations
they explicitly requested.
"""
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ============================================================
# 业务异常类 (Engine Exception Classes)
# ============================================================

class ClusterError(Exception):
    """异常基类 (Base Engine Exception)"""
    status_code: int = 400
    error: str = "cluster_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class AuthError(ClusterError):
    """端点认证失败：凭据错误或重新认证后仍返回 401 (Endpoint authentication failed)

    transient=True 表示失败原因是网络或服务端 5xx，可由请求执行器重试；
    否则视为凭据被拒绝，不再重试。
    """
    status_code = 502
    error = "auth_error"

    def __init__(self, message: str, detail: Optional[str] = None, transient: bool = False):
        super().__init__(message, detail)
        self.transient = transient


class TransientError(ClusterError):
    """超时、连接拒绝或 5xx，重试耗尽 (Transient failure, retries exhausted)"""
    status_code = 503
    error = "transient_error"


class RemoteApiError(ClusterError):
    """端点返回了非 401 的 4xx，不重试 (Endpoint rejected the call)"""
    status_code = 502
    error = "remote_api_error"

    def __init__(self, message: str, upstream_status: int, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.upstream_status = upstream_status


class PolicyViolation(ClusterError):
    """命令命中危险命令黑名单 (Command rejected by the denylist)"""
    status_code = 403
    error = "policy_violation"


class BatchTimeoutError(ClusterError):
    """批量调度整体超时 (Batch-wide deadline elapsed)"""
    status_code = 504
    error = "batch_timeout"


class NotFoundError(ClusterError):
    """资源不存在 (Resource Not Found)"""
    status_code = 404
    error = "not_found"


class ConflictError(ClusterError):
    """资源冲突 (Resource Conflict)"""
    status_code = 409
    error = "conflict"


class ValidationError(ClusterError):
    """数据校验失败 (Validation Error)"""
    status_code = 422
    error = "validation_error"


# ============================================================
# 全局异常处理器注册 (Global Exception Handler Registration)
# ============================================================

def register_exception_handlers(app: FastAPI) -> None:
    """
    注册全局异常处理器到 FastAPI 应用 (Register global exception handlers to FastAPI app)

    处理优先级：
    1. ClusterError 子类 → 对应 HTTP 状态码 + 结构化响应
    2. HTTPException → 保持原样，包装为统一格式
    3. Exception → 500 + 完整 traceback 日志
    """

    @app.exception_handler(ClusterError)
    async def cluster_error_handler(request: Request, exc: ClusterError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error,
                "message": exc.message,
                "detail": exc.detail,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "http_error",
                "message": str(exc.detail),
                "detail": None,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(exc),
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "Internal server error, please try again later",
                "detail": None,
                "status_code": 500,
            },
        )
