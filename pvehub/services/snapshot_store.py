"""
快照存储 (Snapshot Store)

每个端点一份不可变快照，轮询成功后整体替换（写时复制），
读者永远看不到写了一半的集合。
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from pvehub.models.snapshot import NodeSnapshot, VMSnapshot


@dataclass(frozen=True)
class EndpointSnapshot:
    endpoint_id: str
    nodes: Mapping[str, NodeSnapshot]
    vms: Mapping[tuple[str, int], VMSnapshot]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls, endpoint_id: str, nodes: Iterable[NodeSnapshot], vms: Iterable[VMSnapshot]
    ) -> "EndpointSnapshot":
        return cls(
            endpoint_id=endpoint_id,
            nodes=MappingProxyType({n.node: n for n in nodes}),
            vms=MappingProxyType({(v.node, v.vmid): v for v in vms}),
        )


class SnapshotStore:
    def __init__(self):
        self._snapshots: Mapping[str, EndpointSnapshot] = MappingProxyType({})

    def replace(self, snapshot: EndpointSnapshot) -> Optional[EndpointSnapshot]:
        """整体替换一个端点的快照，返回上一代快照。"""
        current = self._snapshots
        updated = dict(current)
        updated[snapshot.endpoint_id] = snapshot
        self._snapshots = MappingProxyType(updated)
        return current.get(snapshot.endpoint_id)

    def purge(self, endpoint_id: str) -> Optional[EndpointSnapshot]:
        current = self._snapshots
        if endpoint_id not in current:
            return None
        updated = dict(current)
        removed = updated.pop(endpoint_id)
        self._snapshots = MappingProxyType(updated)
        return removed

    def get(self, endpoint_id: str) -> Optional[EndpointSnapshot]:
        return self._snapshots.get(endpoint_id)

    def nodes(self, endpoint_id: Optional[str] = None) -> list[NodeSnapshot]:
        snapshots = self._select(endpoint_id)
        return [n for s in snapshots for n in s.nodes.values()]

    def vms(self, endpoint_id: Optional[str] = None) -> list[VMSnapshot]:
        snapshots = self._select(endpoint_id)
        return [v for s in snapshots for v in s.vms.values()]

    def find_node(self, endpoint_id: str, node: str) -> Optional[NodeSnapshot]:
        snapshot = self._snapshots.get(endpoint_id)
        return snapshot.nodes.get(node) if snapshot else None

    def find_vm(self, endpoint_id: str, node: str, vmid: int) -> Optional[VMSnapshot]:
        snapshot = self._snapshots.get(endpoint_id)
        return snapshot.vms.get((node, vmid)) if snapshot else None

    def _select(self, endpoint_id: Optional[str]) -> list[EndpointSnapshot]:
        snapshots = self._snapshots
        if endpoint_id is None:
            return list(snapshots.values())
        snapshot = snapshots.get(endpoint_id)
        return [snapshot] if snapshot else []
