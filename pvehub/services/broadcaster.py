"""
事件广播器 (Event Broadcaster)

基于内存队列实现的发布-订阅模式。所有事件共享同一递增序号，发布时在同一个同步步骤内
写入每个订阅者队列，因此每个订阅者看到的顺序就是发布顺序，且不会重复投递。
订阅时在同一同步步骤内拍下完整快照并登记队列，晚到的订阅者先看到快照，再看到其后的全部事件。
队列溢出的订阅者会被标记为 lagged 并移除，而不是悄悄丢事件。
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Union

from pvehub.core.exceptions import ValidationError
from pvehub.models.event import Event, EventKind

logger = logging.getLogger(__name__)

SNAPSHOT_KINDS = ("connections", "nodes", "vms", "alerts")

SnapshotProvider = Callable[[str], list]

_CLOSED = object()


class Subscription:
    """一个订阅者：初始快照 + 后续事件队列，可用 ``async for`` 迭代。"""

    def __init__(self, broadcaster: "Broadcaster", snapshot: dict, maxsize: int):
        self.snapshot = snapshot
        self.lagged = False
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._maxsize = maxsize
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: Event) -> bool:
        if self._queue.qsize() >= self._maxsize:
            return False
        self._queue.put_nowait(event)
        return True

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[Event]:
        """取下一条事件；订阅已结束时返回 None。"""
        item = await self._queue.get()
        if item is _CLOSED:
            # 留给后续的 get 调用
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def get_nowait(self) -> Optional[Event]:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Broadcaster:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._seq = 0
        self._snapshot_provider: Optional[SnapshotProvider] = None

    @property
    def seq(self) -> int:
        return self._seq

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def set_snapshot_provider(self, provider: SnapshotProvider) -> None:
        self._snapshot_provider = provider

    def publish(
        self,
        kind: Union[EventKind, str],
        action: str,
        endpoint_id: Optional[str] = None,
        key: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Event:
        self._seq += 1
        event = Event(
            seq=self._seq,
            kind=EventKind(kind),
            action=action,
            endpoint_id=endpoint_id,
            key=key,
            data=data or {},
        )
        for sub in list(self._subscribers):
            if not sub._offer(event):
                logger.warning(
                    "Subscriber queue overflow at seq=%d, dropping lagged subscriber", event.seq
                )
                sub.lagged = True
                self._drop(sub)
        return event

    def subscribe(self) -> Subscription:
        snapshot = {kind: self._capture(kind) for kind in SNAPSHOT_KINDS}
        snapshot["seq"] = self._seq
        sub = Subscription(self, snapshot, self.queue_size)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._drop(sub)

    def request(self, kind: str) -> list:
        """按需获取某一类的当前快照 (connections / nodes / vms / alerts)。"""
        if kind not in SNAPSHOT_KINDS:
            raise ValidationError(
                f"Unknown snapshot kind '{kind}'", detail=f"expected one of {', '.join(SNAPSHOT_KINDS)}"
            )
        return self._capture(kind)

    def close_all(self) -> None:
        for sub in list(self._subscribers):
            self._drop(sub)

    def _capture(self, kind: str) -> list:
        if self._snapshot_provider is None:
            return []
        return self._snapshot_provider(kind)

    def _drop(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
        sub._close()
