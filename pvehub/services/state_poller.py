"""
状态轮询器 (State Poller)

每个端点一个后台任务，按周期拉取节点和虚拟机列表，与上一代快照按复合键比对，
整体替换快照后广播 added / removed / changed 事件，并把新快照交给告警引擎评估。

Per-endpoint state machine: idle -> polling -> idle | backoff -> idle.
A failed cycle keeps the previous snapshot; the loop then backs off with
min(interval * 2**(n-1), max_backoff) before the next attempt.
"""
import asyncio
import contextlib
import enum
import logging
from typing import Any, Awaitable, Callable, Optional

from pvehub.core.exceptions import AuthError, RemoteApiError, TransientError
from pvehub.models.event import EventKind
from pvehub.models.snapshot import GuestKind, NodeSnapshot, VMSnapshot
from pvehub.services.broadcaster import Broadcaster
from pvehub.services.connection_registry import ConnectionRegistry
from pvehub.services.pve_api import PVEApi
from pvehub.services.snapshot_store import EndpointSnapshot, SnapshotStore

logger = logging.getLogger(__name__)


class PollState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    BACKOFF = "backoff"


def exceeds_step(old: Optional[float], new: Optional[float], step: float) -> bool:
    """两个数值之差是否达到量化步长；一边缺失另一边存在也算变化。"""
    if old is None or new is None:
        return (old is None) != (new is None)
    if step <= 0:
        return old != new
    return abs(new - old) >= step


def _usage_moved(old, new, step: float) -> bool:
    return any(
        exceeds_step(getattr(old, field), getattr(new, field), step)
        for field in ("cpu_percent", "mem_percent", "disk_percent")
    )


def node_changed(old: NodeSnapshot, new: NodeSnapshot, step: float) -> bool:
    return old.status != new.status or _usage_moved(old, new, step)


def vm_changed(old: VMSnapshot, new: VMSnapshot, step: float) -> bool:
    return old.status != new.status or old.name != new.name or _usage_moved(old, new, step)


def node_key(endpoint_id: str, node: str) -> str:
    return f"{endpoint_id}/{node}"


def vm_key(endpoint_id: str, node: str, vmid: int) -> str:
    return f"{endpoint_id}/{node}/{vmid}"


def diff_snapshots(
    previous: Optional[EndpointSnapshot], current: EndpointSnapshot, step: float = 1.0
) -> list[tuple[EventKind, str, str, dict]]:
    """比较两代快照，返回 (kind, action, key, data) 列表。

    changed 只在状态或名称不同、或 cpu/内存/磁盘百分比的变化幅度达到 step 时产生。
    """
    endpoint_id = current.endpoint_id
    old_nodes = previous.nodes if previous else {}
    old_vms = previous.vms if previous else {}
    changes: list[tuple[EventKind, str, str, dict]] = []

    for name, node in current.nodes.items():
        key = node_key(endpoint_id, name)
        old = old_nodes.get(name)
        if old is None:
            changes.append((EventKind.NODE, "added", key, node.model_dump(mode="json")))
        elif node_changed(old, node, step):
            changes.append((EventKind.NODE, "changed", key, node.model_dump(mode="json")))
    for name, node in old_nodes.items():
        if name not in current.nodes:
            changes.append((EventKind.NODE, "removed", node_key(endpoint_id, name), node.model_dump(mode="json")))

    for vm_id, vm in current.vms.items():
        key = vm_key(endpoint_id, *vm_id)
        old = old_vms.get(vm_id)
        if old is None:
            changes.append((EventKind.VM, "added", key, vm.model_dump(mode="json")))
        elif vm_changed(old, vm, step):
            changes.append((EventKind.VM, "changed", key, vm.model_dump(mode="json")))
    for vm_id, vm in old_vms.items():
        if vm_id not in current.vms:
            changes.append((EventKind.VM, "removed", vm_key(endpoint_id, *vm_id), vm.model_dump(mode="json")))

    return changes


class StatePoller:
    def __init__(
        self,
        registry: ConnectionRegistry,
        store: SnapshotStore,
        broadcaster: Broadcaster,
        alert_engine=None,
        interval: float = 30.0,
        max_backoff: float = 300.0,
        quantization_step: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.store = store
        self.broadcaster = broadcaster
        self.alert_engine = alert_engine
        self.interval = interval
        self.max_backoff = max_backoff
        self.quantization_step = quantization_step
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._failures: dict[str, int] = {}
        self._states: dict[str, PollState] = {}

    def state(self, endpoint_id: str) -> PollState:
        return self._states.get(endpoint_id, PollState.IDLE)

    def failures(self, endpoint_id: str) -> int:
        return self._failures.get(endpoint_id, 0)

    def is_running(self, endpoint_id: str) -> bool:
        task = self._tasks.get(endpoint_id)
        return task is not None and not task.done()

    def backoff_delay(self, failures: int) -> float:
        if failures <= 0:
            return self.interval
        return min(self.interval * 2 ** (failures - 1), self.max_backoff)

    def start(self, endpoint_id: str) -> None:
        if self.is_running(endpoint_id):
            return
        self._tasks[endpoint_id] = asyncio.create_task(
            self._loop(endpoint_id), name=f"poll:{endpoint_id}"
        )
        logger.info("Polling started for %s (interval %.0fs)", endpoint_id, self.interval)

    def start_all(self) -> None:
        for endpoint_id in self.registry.ids():
            self.start(endpoint_id)

    async def stop(self, endpoint_id: str) -> None:
        """取消轮询任务并等待其退出，正在进行的轮询会被一并取消。"""
        task = self._tasks.pop(endpoint_id, None)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._locks.pop(endpoint_id, None)
        self._failures.pop(endpoint_id, None)
        self._states.pop(endpoint_id, None)

    async def stop_all(self) -> None:
        for endpoint_id in list(self._tasks):
            await self.stop(endpoint_id)

    async def _loop(self, endpoint_id: str) -> None:
        while self.registry.has(endpoint_id):
            executor = self.registry.get(endpoint_id).executor
            if executor.credentials_rejected:
                # 凭据被拒绝后不再轮询，等待 test() 成功清除标记
                logger.debug("Skipping poll for %s: credentials rejected", endpoint_id)
                await self._sleep(self.interval)
                continue
            delay = self.interval
            try:
                if not await self.poll_once(endpoint_id):
                    delay = self.backoff_delay(self._failures.get(endpoint_id, 1))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll loop error for %s", endpoint_id)
                self._failures[endpoint_id] = self._failures.get(endpoint_id, 0) + 1
                self._states[endpoint_id] = PollState.BACKOFF
                delay = self.backoff_delay(self._failures[endpoint_id])
            await self._sleep(delay)
            if self._states.get(endpoint_id) == PollState.BACKOFF:
                self._states[endpoint_id] = PollState.IDLE

    async def poll_once(self, endpoint_id: str) -> bool:
        """执行一次轮询周期，返回是否成功。同一端点不会并发轮询。"""
        lock = self._locks.setdefault(endpoint_id, asyncio.Lock())
        async with lock:
            handle = self.registry.get(endpoint_id)
            self._states[endpoint_id] = PollState.POLLING
            try:
                nodes, vms, unknown_nodes = await self._fetch(endpoint_id, handle.api)
            except (AuthError, TransientError) as e:
                self._record_failure(endpoint_id, e.message)
                if self.alert_engine is not None:
                    self.alert_engine.record_poll_failure(endpoint_id, e.detail or e.message)
                return False
            except RemoteApiError as e:
                self._record_failure(endpoint_id, f"{e.message} ({e.detail})")
                return False

            # 轮询期间端点被移除，丢弃结果
            if not self.registry.has(endpoint_id):
                self._states.pop(endpoint_id, None)
                return False

            # 没拿到新数据的节点沿用上一代的虚拟机，保留旧数据而不是清空
            stale = self.store.get(endpoint_id)
            if stale is not None and unknown_nodes:
                vms.extend(v for v in stale.vms.values() if v.node in unknown_nodes)
            snapshot = EndpointSnapshot.build(endpoint_id, nodes, vms)
            previous = self.store.replace(snapshot)
            self._failures[endpoint_id] = 0
            self._states[endpoint_id] = PollState.IDLE

            for kind, action, key, data in diff_snapshots(previous, snapshot, self.quantization_step):
                self.broadcaster.publish(kind, action, endpoint_id=endpoint_id, key=key, data=data)

            if self.alert_engine is not None:
                elapsed = (snapshot.taken_at - previous.taken_at).total_seconds() if previous else None
                self.alert_engine.record_recovery(endpoint_id)
                self.alert_engine.evaluate(
                    endpoint_id,
                    list(snapshot.nodes.values()),
                    list(snapshot.vms.values()),
                    previous_vms=list(previous.vms.values()) if previous else None,
                    elapsed=elapsed,
                    unknown_nodes=unknown_nodes,
                )
            logger.debug(
                "Polled %s: %d node(s), %d guest(s)", endpoint_id, len(snapshot.nodes), len(snapshot.vms)
            )
            return True

    def _record_failure(self, endpoint_id: str, cause: str) -> None:
        count = self._failures.get(endpoint_id, 0) + 1
        self._failures[endpoint_id] = count
        self._states[endpoint_id] = PollState.BACKOFF
        logger.warning("Poll of %s failed (%d consecutive): %s", endpoint_id, count, cause)

    async def _fetch(
        self, endpoint_id: str, api: PVEApi
    ) -> tuple[list[NodeSnapshot], list[VMSnapshot], set[str]]:
        """拉取节点和虚拟机列表，同时返回本轮没有拿到客户机数据的节点（离线或列表失败）。"""
        nodes = [NodeSnapshot.from_api(endpoint_id, raw) for raw in await api.list_nodes()]
        vms: list[VMSnapshot] = []
        unknown: set[str] = set()
        for node in nodes:
            if node.status != "online":
                unknown.add(node.node)
                continue
            fresh: list[VMSnapshot] = []
            for kind in (GuestKind.QEMU, GuestKind.LXC):
                try:
                    guests = await api.list_guests(node.node, kind)
                except RemoteApiError as e:
                    logger.warning(
                        "Failed to list %s guests on %s/%s: %s", kind.value, endpoint_id, node.node, e.message
                    )
                    unknown.add(node.node)
                    break
                fresh.extend(VMSnapshot.from_api(endpoint_id, node.node, kind, raw) for raw in guests)
            if node.node not in unknown:
                vms.extend(fresh)
        return nodes, vms, unknown
