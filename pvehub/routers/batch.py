"""
命令调度路由 (Command Dispatch Router)

API端点：POST /batch/action（单目标）, POST /batch（多目标）
每个目标的成败都在结果里单独体现，HTTP 层面总是 200。
"""
from fastapi import APIRouter, Depends

from pvehub.core.deps import get_manager
from pvehub.models.batch import BatchResult, BatchSummary
from pvehub.schemas.batch import ActionRequest, BatchRequest, BatchResponse
from pvehub.services.cluster_manager import ClusterManager

router = APIRouter(prefix="/api/v1/batch", tags=["batch"])


@router.post("/action", response_model=BatchResult)
async def dispatch_action(body: ActionRequest, manager: ClusterManager = Depends(get_manager)):
    return await manager.dispatch_action(body.target, body.action)


@router.post("", response_model=BatchResponse)
async def dispatch_batch(body: BatchRequest, manager: ClusterManager = Depends(get_manager)):
    results = await manager.dispatch_batch(body.targets, body.action)
    return BatchResponse(results=results, summary=BatchSummary.from_results(results))
