"""
批量调度器 (Batch Dispatcher)

对一组目标并发执行同一个动作：全局信号量限制并发，每个目标独立成一个任务，
任何目标的失败（包括意外崩溃）只会变成它自己的失败结果；整批有统一截止时间，
超时仍未完成的目标被取消并合成为超时失败。每个结果都以 command_result 事件广播，
足够外部协作方写审计日志。
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pvehub.core.exceptions import (
    BatchTimeoutError,
    ClusterError,
    NotFoundError,
    RemoteApiError,
    ValidationError,
)
from pvehub.models.batch import (
    Action,
    BackupAction,
    BatchResult,
    BatchTarget,
    PowerAction,
    PowerActionName,
    ShellAction,
)
from pvehub.models.event import EventKind
from pvehub.models.snapshot import GuestKind, VMSnapshot
from pvehub.services.broadcaster import Broadcaster
from pvehub.services.connection_registry import ConnectionRegistry
from pvehub.services.safety import ensure_command_safe
from pvehub.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

# 快照显示客体已处于该状态时跳过对应的电源操作
SKIP_WHEN = {
    PowerActionName.START: "running",
    PowerActionName.STOP: "stopped",
    PowerActionName.SHUTDOWN: "stopped",
    PowerActionName.REBOOT: "stopped",
    PowerActionName.SUSPEND: "stopped",
}

CONTAINER_UNSUPPORTED = {PowerActionName.SUSPEND, PowerActionName.RESUME}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: ClusterError) -> str:
    if exc.detail:
        return f"{exc.message}: {exc.detail}"
    return exc.message


class BatchDispatcher:
    def __init__(
        self,
        registry: ConnectionRegistry,
        store: SnapshotStore,
        broadcaster: Broadcaster,
        max_concurrency: int = 5,
        batch_timeout: float = 120.0,
    ):
        self.registry = registry
        self.store = store
        self.broadcaster = broadcaster
        self.batch_timeout = batch_timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def dispatch_one(self, target: BatchTarget, action: Action) -> BatchResult:
        results = await self.dispatch([target], action)
        return results[0]

    async def dispatch(self, targets: list[BatchTarget], action: Action) -> list[BatchResult]:
        """Run ``action`` on every target; returns one result per target, in input order."""
        if not targets:
            return []

        started_at = _now()
        tasks = [asyncio.create_task(self._run(target, action)) for target in targets]
        _, pending = await asyncio.wait(tasks, timeout=self.batch_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Batch %s timed out after %.0fs: %d of %d target(s) still pending",
                action.label, self.batch_timeout, len(pending), len(targets),
            )

        results = []
        for target, task in zip(targets, tasks):
            if not task.cancelled() and task.exception() is None:
                results.append(task.result())
                continue
            exc = BatchTimeoutError(f"Batch deadline of {self.batch_timeout:g}s elapsed")
            result = self._result(target, action, started_at, error=exc)
            self._publish(result)
            results.append(result)

        failed = sum(1 for r in results if not r.success)
        logger.info(
            "Batch %s finished: %d target(s), %d failed", action.label, len(results), failed
        )
        return results

    async def _run(self, target: BatchTarget, action: Action) -> BatchResult:
        started_at = _now()
        try:
            vm = self._preflight(target, action)
            async with self._semaphore:
                # 等待期间端点可能已被移除，不再为其创建新工作
                if not self.registry.has(target.endpoint_id):
                    raise NotFoundError(f"Endpoint '{target.endpoint_id}' was removed")
                output, skipped = await self._perform(target, action, vm)
            result = self._result(target, action, started_at, output=output, skipped=skipped)
        except ClusterError as e:
            result = self._result(target, action, started_at, error=e)
        except Exception as e:
            logger.exception("Unexpected failure dispatching %s to %s", action.label, target)
            result = self._result(
                target, action, started_at, error_message=f"Internal error: {e}", error_code="internal_error"
            )
        self._publish(result)
        return result

    def _preflight(self, target: BatchTarget, action: Action) -> Optional[VMSnapshot]:
        """不访问网络的预检，返回快照中的目标虚拟机（若有）。"""
        if isinstance(action, ShellAction):
            ensure_command_safe(action.command)

        self.registry.get(target.endpoint_id)

        if target.vmid is None:
            if not isinstance(action, ShellAction):
                raise ValidationError(f"Action '{action.label}' requires a vmid")
            if self.store.get(target.endpoint_id) is not None and \
                    self.store.find_node(target.endpoint_id, target.node) is None:
                raise NotFoundError(f"Node '{target.node}' not found on '{target.endpoint_id}'")
            return None

        vm = None
        if self.store.get(target.endpoint_id) is not None:
            vm = self.store.find_vm(target.endpoint_id, target.node, target.vmid)
            if vm is None:
                raise NotFoundError(
                    f"VM {target.vmid} not found on {target.endpoint_id}/{target.node}"
                )

        kind = vm.kind if vm else target.kind
        if isinstance(action, PowerAction) and kind == GuestKind.LXC and action.name in CONTAINER_UNSUPPORTED:
            raise ValidationError(f"Containers do not support '{action.name.value}'")
        return vm

    async def _perform(
        self, target: BatchTarget, action: Action, vm: Optional[VMSnapshot]
    ) -> tuple[Any, bool]:
        api = self.registry.api(target.endpoint_id)

        if isinstance(action, PowerAction):
            kind = vm.kind if vm else target.kind
            if vm is not None and SKIP_WHEN.get(action.name) == vm.status:
                return f"already {vm.status}", True
            return await api.power(target.node, kind, target.vmid, action.name), False

        if isinstance(action, BackupAction):
            return await api.backup(target.node, target.vmid, action), False

        try:
            return await api.execute_command(target.node, action.command, action.timeout), False
        except RemoteApiError as e:
            if e.upstream_status in (404, 501):
                raise RemoteApiError(
                    "Node does not support remote command execution",
                    upstream_status=e.upstream_status,
                    detail=e.detail,
                ) from e
            raise

    def _result(
        self,
        target: BatchTarget,
        action: Action,
        started_at: datetime,
        output: Any = None,
        skipped: bool = False,
        error: Optional[ClusterError] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> BatchResult:
        finished_at = _now()
        if error is not None:
            error_message = _describe(error)
            error_code = error.error
        if output is not None and not isinstance(output, str):
            output = str(output)
        return BatchResult(
            target=target,
            action=action.label,
            success=error_message is None,
            skipped=skipped,
            output=output,
            error=error_message,
            error_code=error_code,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        )

    def _publish(self, result: BatchResult) -> None:
        target = result.target
        key = f"{target.endpoint_id}/{target.node}"
        if target.vmid is not None:
            key = f"{key}/{target.vmid}"
        self.broadcaster.publish(
            EventKind.COMMAND_RESULT,
            "completed" if result.success else "failed",
            endpoint_id=target.endpoint_id,
            key=key,
            data=result.model_dump(mode="json"),
        )
