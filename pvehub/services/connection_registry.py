"""
连接注册表 (Connection Registry)

按端点 id 持有配置、请求执行器和 API 封装。添加端点不做预认证；
移除端点时先注销（不再接受新工作），再依次执行移除钩子、登出、清理快照并广播 removed 事件。
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from pvehub.core.exceptions import ConflictError, NotFoundError
from pvehub.models.endpoint import ConnectionState, ConnectionStatus, EndpointConfig
from pvehub.models.event import EventKind
from pvehub.services.broadcaster import Broadcaster
from pvehub.services.pve_api import PVEApi
from pvehub.services.request_executor import RequestExecutor, RetryPolicy
from pvehub.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

TransportFactory = Callable[[EndpointConfig], Optional[httpx.AsyncBaseTransport]]
RemovalHook = Callable[[str], Awaitable[None]]


@dataclass
class EndpointHandle:
    config: EndpointConfig
    executor: RequestExecutor
    api: PVEApi


class ConnectionRegistry:
    def __init__(
        self,
        store: SnapshotStore,
        broadcaster: Broadcaster,
        retry_policy: Optional[RetryPolicy] = None,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport_factory = transport_factory
        self._sleep = sleep
        self._handles: dict[str, EndpointHandle] = {}
        self._removal_hooks: list[RemovalHook] = []
        self._removing: set[str] = set()

    def add_removal_hook(self, hook: RemovalHook) -> None:
        self._removal_hooks.append(hook)

    def add(self, config: EndpointConfig) -> ConnectionStatus:
        if config.id in self._handles:
            raise ConflictError(f"Endpoint '{config.id}' already exists")
        if config.id in self._removing:
            raise ConflictError(f"Endpoint '{config.id}' is being removed")
        transport = self._transport_factory(config) if self._transport_factory else None
        executor = RequestExecutor(
            config,
            retry_policy=self.retry_policy,
            on_status_change=self._status_changed,
            transport=transport,
            sleep=self._sleep,
        )
        self._handles[config.id] = EndpointHandle(config=config, executor=executor, api=PVEApi(executor))
        logger.info("Endpoint added: %s (%s:%d)", config.id, config.host, config.port)
        self.broadcaster.publish(
            EventKind.CONNECTION,
            "added",
            endpoint_id=config.id,
            key=config.id,
            data={**config.public_view(), **executor.status.model_dump(mode="json")},
        )
        return executor.status

    async def remove(self, endpoint_id: str) -> None:
        handle = self._handles.pop(endpoint_id, None)
        if handle is None:
            raise NotFoundError(f"Endpoint '{endpoint_id}' not found")
        self._removing.add(endpoint_id)
        try:
            for hook in self._removal_hooks:
                try:
                    await hook(endpoint_id)
                except Exception:
                    logger.exception("Removal hook failed for %s", endpoint_id)
            await handle.executor.close()
            self.store.purge(endpoint_id)
        finally:
            self._removing.discard(endpoint_id)
        self.broadcaster.publish(
            EventKind.CONNECTION, "removed", endpoint_id=endpoint_id, key=endpoint_id
        )
        logger.info("Endpoint removed: %s", endpoint_id)

    def has(self, endpoint_id: str) -> bool:
        return endpoint_id in self._handles

    def get(self, endpoint_id: str) -> EndpointHandle:
        handle = self._handles.get(endpoint_id)
        if handle is None:
            raise NotFoundError(f"Endpoint '{endpoint_id}' not found")
        return handle

    def api(self, endpoint_id: str) -> PVEApi:
        return self.get(endpoint_id).api

    def ids(self) -> list[str]:
        return list(self._handles)

    def list(self) -> list[ConnectionStatus]:
        return [h.executor.status for h in self._handles.values()]

    def stats(self) -> dict:
        statuses = [s.status for s in self.list()]
        total = len(statuses)
        connected = statuses.count(ConnectionState.CONNECTED)
        return {
            "total": total,
            "connected": connected,
            "disconnected": statuses.count(ConnectionState.DISCONNECTED),
            "error": statuses.count(ConnectionState.ERROR),
            "health_ratio": connected / total if total else 0,
        }

    async def execute(self, endpoint_id: str, method: str, path: str, **kwargs) -> Any:
        return await self.get(endpoint_id).executor.execute(method, path, **kwargs)

    async def test(self, endpoint_id: str) -> bool:
        return await self.get(endpoint_id).executor.test()

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await handle.executor.close()

    def _status_changed(self, status: ConnectionStatus) -> None:
        # 已移除的端点登出时不再广播
        if status.endpoint_id not in self._handles:
            return
        self.broadcaster.publish(
            EventKind.CONNECTION,
            "changed",
            endpoint_id=status.endpoint_id,
            key=status.endpoint_id,
            data=status.model_dump(mode="json"),
        )
