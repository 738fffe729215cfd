"""
资源快照路由 (Inventory Router)

从最近一次成功轮询的快照返回节点与虚拟机，不会实时访问端点；
虚拟机配置读写则直接经由请求执行器访问端点。
"""
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from pvehub.core.deps import get_manager
from pvehub.models.snapshot import NodeSnapshot, VMSnapshot
from pvehub.services.cluster_manager import ClusterManager

router = APIRouter(prefix="/api/v1", tags=["inventory"])


@router.get("/nodes", response_model=list[NodeSnapshot])
async def list_nodes(
    endpoint_id: Optional[str] = None,
    manager: ClusterManager = Depends(get_manager),
):
    return manager.list_nodes(endpoint_id)


@router.get("/vms", response_model=list[VMSnapshot])
async def list_vms(
    endpoint_id: Optional[str] = None,
    node: Optional[str] = None,
    manager: ClusterManager = Depends(get_manager),
):
    return manager.list_vms(endpoint_id, node=node)


@router.get("/vms/{endpoint_id}/{node}/{vmid}", response_model=VMSnapshot)
async def get_vm(endpoint_id: str, node: str, vmid: int, manager: ClusterManager = Depends(get_manager)):
    return manager.get_vm(endpoint_id, node, vmid)


@router.get("/vms/{endpoint_id}/{node}/{vmid}/config")
async def get_vm_config(endpoint_id: str, node: str, vmid: int, manager: ClusterManager = Depends(get_manager)):
    return await manager.vm_config(endpoint_id, node, vmid)


@router.put("/vms/{endpoint_id}/{node}/{vmid}/config")
async def update_vm_config(
    endpoint_id: str,
    node: str,
    vmid: int,
    changes: dict[str, Any] = Body(...),
    manager: ClusterManager = Depends(get_manager),
):
    result = await manager.update_vm_config(endpoint_id, node, vmid, changes)
    return {"result": result}
