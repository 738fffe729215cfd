"""
连接管理路由 (Connection Management Router)

API端点：GET /connections, POST /connections, GET /connections/stats,
GET /connections/{id}, DELETE /connections/{id}, POST /connections/{id}/test
"""
from fastapi import APIRouter, Depends

from pvehub.core.deps import get_manager
from pvehub.models.endpoint import ConnectionStatus, EndpointConfig
from pvehub.schemas.connection import ConnectionCreate, ConnectionResponse, ConnectionTestResponse
from pvehub.services.cluster_manager import ClusterManager

router = APIRouter(prefix="/api/v1/connections", tags=["connections"])


def _response(manager: ClusterManager, status: ConnectionStatus) -> ConnectionResponse:
    return ConnectionResponse(
        **status.model_dump(mode="json"),
        polling=manager.poller.state(status.endpoint_id).value,
    )


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(manager: ClusterManager = Depends(get_manager)):
    return [_response(manager, s) for s in manager.list_connections()]


@router.get("/stats")
async def connection_stats(manager: ClusterManager = Depends(get_manager)):
    """连接统计：total / connected / disconnected / error / health_ratio。"""
    return manager.connection_stats()


@router.post("", response_model=ConnectionResponse, status_code=201)
async def add_connection(body: ConnectionCreate, manager: ClusterManager = Depends(get_manager)):
    """注册新端点。不做预认证，首次轮询或测试时才登录。"""
    data = body.model_dump(exclude_none=True)
    status = manager.add_endpoint(EndpointConfig(**data))
    return _response(manager, status)


@router.get("/{endpoint_id}", response_model=ConnectionResponse)
async def get_connection(endpoint_id: str, manager: ClusterManager = Depends(get_manager)):
    return _response(manager, manager.get_connection(endpoint_id))


@router.delete("/{endpoint_id}", status_code=204)
async def remove_connection(endpoint_id: str, manager: ClusterManager = Depends(get_manager)):
    await manager.remove_endpoint(endpoint_id)


@router.post("/{endpoint_id}/test", response_model=ConnectionTestResponse)
async def test_connection(endpoint_id: str, manager: ClusterManager = Depends(get_manager)):
    """用全新会话测试端点连通性，失败不抛异常，只反映在返回值和连接状态里。"""
    success = await manager.test_endpoint(endpoint_id)
    status = manager.get_connection(endpoint_id)
    return ConnectionTestResponse(
        endpoint_id=endpoint_id,
        success=success,
        status=status.status.value,
        last_error=status.last_error,
    )
