"""
集群管理器 (Cluster Manager)

下游调用方的唯一入口：组装注册表、快照存储、轮询器、广播器、批量调度器和告警引擎，
负责它们的启动与关闭。HTTP 路由和 CLI 只调用这里的方法。

Single downstream facade. Composes the registry, snapshot store, poller,
broadcaster, dispatcher and alert engine, and owns their lifecycle.
"""
import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from pvehub.core.config import Settings
from pvehub.core.exceptions import NotFoundError
from pvehub.models.alert import AlertKind, AlertLevel, AlertRecord, AlertStatus
from pvehub.models.batch import Action, BatchResult, BatchTarget
from pvehub.models.endpoint import ConnectionStatus, EndpointConfig
from pvehub.models.snapshot import GuestKind, NodeSnapshot, VMSnapshot
from pvehub.services.alert_engine import AlertEngine
from pvehub.services.batch_dispatcher import BatchDispatcher
from pvehub.services.broadcaster import Broadcaster, Subscription
from pvehub.services.connection_registry import ConnectionRegistry, TransportFactory
from pvehub.services.request_executor import RetryPolicy
from pvehub.services.snapshot_store import SnapshotStore
from pvehub.services.state_poller import StatePoller
from pvehub.tasks.alert_cleanup import alert_cleanup_loop

logger = logging.getLogger(__name__)


class ClusterManager:
    def __init__(
        self,
        settings: Settings,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.broadcaster = Broadcaster(queue_size=settings.subscriber_queue_size)
        self.store = SnapshotStore()
        self.registry = ConnectionRegistry(
            self.store,
            self.broadcaster,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries, base_delay=settings.retry_base_delay
            ),
            transport_factory=transport_factory,
            sleep=sleep,
        )
        self.alerts = AlertEngine(self.broadcaster, settings.alert_thresholds())
        self.poller = StatePoller(
            self.registry,
            self.store,
            self.broadcaster,
            alert_engine=self.alerts,
            interval=settings.poll_interval,
            max_backoff=settings.poll_max_backoff,
            quantization_step=settings.quantization_step,
            sleep=sleep,
        )
        self.dispatcher = BatchDispatcher(
            self.registry,
            self.store,
            self.broadcaster,
            max_concurrency=settings.batch_concurrency,
            batch_timeout=settings.batch_timeout,
        )
        # 移除端点：先停轮询（取消进行中的轮询），再解除其告警
        self.registry.add_removal_hook(self.poller.stop)
        self.registry.add_removal_hook(self.alerts.on_endpoint_removed)
        self.broadcaster.set_snapshot_provider(self._snapshot)
        self._started = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # 生命周期 (lifecycle)
    # ------------------------------------------------------------------

    async def start(self, endpoints: Iterable[EndpointConfig] = ()) -> None:
        for config in endpoints:
            self.add_endpoint(config)
        self._started = True
        self.poller.start_all()
        self._cleanup_task = asyncio.create_task(
            alert_cleanup_loop(
                self.alerts,
                retention_days=self.settings.alert_retention_days,
                interval=self.settings.alert_cleanup_interval,
            )
        )
        logger.info("Cluster manager started with %d endpoint(s)", len(self.registry.ids()))

    async def stop(self) -> None:
        self._started = False
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        await self.poller.stop_all()
        await self.registry.close_all()
        self.broadcaster.close_all()
        logger.info("Cluster manager stopped")

    # ------------------------------------------------------------------
    # 端点 (endpoints)
    # ------------------------------------------------------------------

    def add_endpoint(self, config: EndpointConfig) -> ConnectionStatus:
        if "timeout" not in config.model_fields_set:
            config = config.model_copy(update={"timeout": self.settings.request_timeout})
        status = self.registry.add(config)
        if self._started:
            self.poller.start(config.id)
        return status

    async def remove_endpoint(self, endpoint_id: str) -> None:
        await self.registry.remove(endpoint_id)

    async def test_endpoint(self, endpoint_id: str) -> bool:
        return await self.registry.test(endpoint_id)

    async def poll_endpoint(self, endpoint_id: str) -> bool:
        return await self.poller.poll_once(endpoint_id)

    def get_connection(self, endpoint_id: str) -> ConnectionStatus:
        return self.registry.get(endpoint_id).executor.status

    def list_connections(self) -> List[ConnectionStatus]:
        return self.registry.list()

    def connection_stats(self) -> dict:
        return self.registry.stats()

    # ------------------------------------------------------------------
    # 快照 (inventory)
    # ------------------------------------------------------------------

    def list_nodes(self, endpoint_id: Optional[str] = None) -> List[NodeSnapshot]:
        if endpoint_id is not None:
            self.registry.get(endpoint_id)
        return self.store.nodes(endpoint_id)

    def list_vms(self, endpoint_id: Optional[str] = None, node: Optional[str] = None) -> List[VMSnapshot]:
        if endpoint_id is not None:
            self.registry.get(endpoint_id)
        vms = self.store.vms(endpoint_id)
        if node is not None:
            vms = [vm for vm in vms if vm.node == node]
        return sorted(vms, key=lambda vm: vm.key)

    def get_vm(self, endpoint_id: str, node: str, vmid: int) -> VMSnapshot:
        vm = self.store.find_vm(endpoint_id, node, vmid)
        if vm is None:
            raise NotFoundError(f"VM {vmid} not found on {endpoint_id}/{node}")
        return vm

    async def vm_config(self, endpoint_id: str, node: str, vmid: int) -> dict:
        vm = self.get_vm(endpoint_id, node, vmid)
        return await self.registry.api(endpoint_id).guest_config(node, vm.kind, vmid)

    async def update_vm_config(self, endpoint_id: str, node: str, vmid: int, changes: dict) -> Any:
        vm = self.get_vm(endpoint_id, node, vmid)
        return await self.registry.api(endpoint_id).update_guest_config(node, vm.kind, vmid, changes)

    # ------------------------------------------------------------------
    # 命令 (commands)
    # ------------------------------------------------------------------

    async def dispatch_action(self, target: BatchTarget, action: Action) -> BatchResult:
        return await self.dispatcher.dispatch_one(target, action)

    async def dispatch_batch(self, targets: List[BatchTarget], action: Action) -> List[BatchResult]:
        return await self.dispatcher.dispatch(targets, action)

    # ------------------------------------------------------------------
    # 订阅 (subscription)
    # ------------------------------------------------------------------

    def subscribe(self) -> Subscription:
        return self.broadcaster.subscribe()

    def request(self, kind: str) -> list:
        return self.broadcaster.request(kind)

    # ------------------------------------------------------------------
    # 告警 (alerts)
    # ------------------------------------------------------------------

    def list_alerts(
        self,
        level: Optional[AlertLevel] = None,
        kind: Optional[AlertKind] = None,
        status: Optional[AlertStatus] = None,
        endpoint_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AlertRecord]:
        return self.alerts.list(level=level, kind=kind, status=status, endpoint_id=endpoint_id, limit=limit)

    def get_alert(self, alert_id: str) -> AlertRecord:
        return self.alerts.get(alert_id)

    def acknowledge_alert(self, alert_id: str, by: str = "system") -> AlertRecord:
        return self.alerts.acknowledge(alert_id, by=by)

    def resolve_alert(self, alert_id: str) -> AlertRecord:
        return self.alerts.resolve(alert_id)

    def delete_alert(self, alert_id: str) -> None:
        self.alerts.delete(alert_id)

    def bulk_alerts(self, action: str, ids: List[str]) -> dict:
        return self.alerts.bulk(action, ids)

    def alert_stats(self) -> dict:
        return self.alerts.stats()

    def _snapshot(self, kind: str) -> list:
        if kind == "connections":
            return [s.model_dump(mode="json") for s in self.registry.list()]
        if kind == "nodes":
            return [n.model_dump(mode="json") for n in self.store.nodes()]
        if kind == "vms":
            return [v.model_dump(mode="json") for v in self.store.vms()]
        if kind == "alerts":
            return [a.model_dump(mode="json") for a in self.alerts.open_alerts()]
        return []
