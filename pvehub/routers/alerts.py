"""
告警管理路由模块 (Alert Management Router)

功能说明：提供告警生命周期管理接口
核心职责：
  - 按级别、类型、状态、端点过滤查询告警（新的在前）
  - 告警统计
  - 单条告警的确认、解除、删除以及批量操作
API端点：GET /alerts, GET /alerts/stats, GET /alerts/{id}, POST /alerts/{id}/ack,
        POST /alerts/{id}/resolve, DELETE /alerts/{id}, POST /alerts/batch
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pvehub.core.deps import get_manager
from pvehub.models.alert import AlertKind, AlertLevel, AlertRecord, AlertStatus
from pvehub.schemas.alert import AlertAckRequest, AlertBulkRequest, AlertBulkResponse
from pvehub.services.cluster_manager import ClusterManager

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.get("", response_model=list[AlertRecord])
async def list_alerts(
    level: Optional[AlertLevel] = None,
    kind: Optional[AlertKind] = None,
    status: Optional[AlertStatus] = None,
    endpoint_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    manager: ClusterManager = Depends(get_manager),
):
    """
    告警列表查询接口 (Alert List Query)

    Args:
        level: 级别筛选（critical/warning/info）
        kind: 维度筛选（cpu/memory/disk/network/node_offline/vm_status/connection_lost）
        status: 状态筛选（active/acknowledged/resolved）
        endpoint_id: 端点筛选
        limit: 最多返回条数，默认 100
    """
    return manager.list_alerts(level=level, kind=kind, status=status, endpoint_id=endpoint_id, limit=limit)


@router.get("/stats")
async def alert_stats(manager: ClusterManager = Depends(get_manager)):
    return manager.alert_stats()


@router.post("/batch", response_model=AlertBulkResponse)
async def bulk_alerts(body: AlertBulkRequest, manager: ClusterManager = Depends(get_manager)):
    return manager.bulk_alerts(body.action, body.ids)


@router.get("/{alert_id}", response_model=AlertRecord)
async def get_alert(alert_id: str, manager: ClusterManager = Depends(get_manager)):
    return manager.get_alert(alert_id)


@router.post("/{alert_id}/ack", response_model=AlertRecord)
async def acknowledge_alert(
    alert_id: str,
    body: Optional[AlertAckRequest] = None,
    manager: ClusterManager = Depends(get_manager),
):
    """确认告警，只能从 active 状态确认；已解除的告警返回 409。"""
    by = body.by if body else "system"
    return manager.acknowledge_alert(alert_id, by=by)


@router.post("/{alert_id}/resolve", response_model=AlertRecord)
async def resolve_alert(alert_id: str, manager: ClusterManager = Depends(get_manager)):
    return manager.resolve_alert(alert_id)


@router.delete("/{alert_id}", status_code=204)
async def delete_alert(alert_id: str, manager: ClusterManager = Depends(get_manager)):
    manager.delete_alert(alert_id)
