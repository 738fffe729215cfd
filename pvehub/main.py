"""
pvehub 应用入口模块 (Application Entry Module)

负责 FastAPI 应用的生命周期管理：启动时加载静态端点、创建并启动 ClusterManager，
关闭时停止所有轮询任务并登出全部端点。

Application entry point. The lifespan loads static endpoints, builds and starts the
ClusterManager, and on shutdown stops every poll task and logs out of every endpoint.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI

from pvehub import __version__
from pvehub.core.config import Settings, load_endpoints, settings as default_settings
from pvehub.core.exceptions import register_exception_handlers
from pvehub.routers import alerts, batch, connections, events_ws, inventory
from pvehub.services.cluster_manager import ClusterManager

logger = logging.getLogger(__name__)


def create_app(
    manager: Optional[ClusterManager] = None,
    settings: Optional[Settings] = None,
    endpoints_file: Optional[str] = None,
) -> FastAPI:
    """
    创建 FastAPI 应用 (Create the FastAPI application)

    传入 manager 时由调用方负责其启动与关闭（测试即如此）；
    否则在 lifespan 中按配置新建并管理一个 ClusterManager。
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if manager is None:
            owned = ClusterManager(settings)
            path = endpoints_file or settings.endpoints_file
            endpoints = load_endpoints(path) if path else []
            await owned.start(endpoints)
            app.state.manager = owned

        # 应用运行阶段 (Application running phase)
        yield

        if owned is not None:
            await owned.stop()

    app = FastAPI(
        title="pvehub",
        description="Multi-cluster virtualization connection and command-dispatch engine | 多集群虚拟化连接与命令调度引擎",
        version=__version__,
        lifespan=lifespan,
    )
    if manager is not None:
        app.state.manager = manager

    # 注册全局异常处理器 (Register global exception handlers)
    register_exception_handlers(app)

    app.include_router(connections.router)  # 端点管理 (Endpoint management)
    app.include_router(inventory.router)  # 节点/虚拟机快照 (Node/VM snapshots)
    app.include_router(batch.router)  # 命令调度 (Command dispatch)
    app.include_router(alerts.router)  # 告警管理 (Alert management)
    app.include_router(events_ws.router)  # 事件订阅 (Event subscription)

    @app.get("/health")
    @app.get("/api/v1/health")
    async def health():
        """
        健康检查接口 (Health Check Endpoint)

        只要进程存活即返回 ok；有端点处于 error 状态时返回 degraded，并附带连接统计。
        """
        stats = app.state.manager.connection_stats()
        status = "ok" if stats["error"] == 0 else "degraded"
        return {
            "status": status,
            "connections": stats,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
