"""
FastAPI 依赖项模块 (FastAPI Dependencies Module)

路由通过 get_manager 取得应用生命周期内创建的 ClusterManager 实例。
Routers obtain the ClusterManager created by the application lifespan through get_manager.
"""
from fastapi import Request

from pvehub.services.cluster_manager import ClusterManager


def get_manager(request: Request) -> ClusterManager:
    return request.app.state.manager
