"""
节点与虚拟机快照模型。

快照每个轮询周期整体替换，从不做字段级的局部更新。
VM 的唯一标识是 (endpoint_id, node, vmid)，单独的 vmid 跨端点并不唯一。
"""
from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel


class GuestKind(str, enum.Enum):
    QEMU = "qemu"  # 完整虚拟机
    LXC = "lxc"    # 容器


def usage_percent(used: Optional[float], total: Optional[float]) -> Optional[float]:
    """计算使用率百分比，总量未知时返回 None。"""
    if not total or used is None:
        return None
    return used / total * 100


def _num(raw: dict[str, Any], field: str) -> float:
    value = raw.get(field)
    return value if isinstance(value, (int, float)) else 0


class NodeSnapshot(BaseModel):
    model_config = {"frozen": True}

    endpoint_id: str
    node: str
    status: str = "unknown"
    cpu: float = 0.0  # 0..1
    maxcpu: int = 0
    mem: int = 0
    maxmem: int = 0
    disk: int = 0
    maxdisk: int = 0
    uptime: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.endpoint_id, self.node)

    @property
    def cpu_percent(self) -> Optional[float]:
        return self.cpu * 100 if self.status == "online" else None

    @property
    def mem_percent(self) -> Optional[float]:
        return usage_percent(self.mem, self.maxmem)

    @property
    def disk_percent(self) -> Optional[float]:
        return usage_percent(self.disk, self.maxdisk)

    @classmethod
    def from_api(cls, endpoint_id: str, raw: dict[str, Any]) -> "NodeSnapshot":
        return cls(
            endpoint_id=endpoint_id,
            node=str(raw["node"]),
            status=raw.get("status") or "unknown",
            cpu=_num(raw, "cpu"),
            maxcpu=int(_num(raw, "maxcpu")),
            mem=int(_num(raw, "mem")),
            maxmem=int(_num(raw, "maxmem")),
            disk=int(_num(raw, "disk")),
            maxdisk=int(_num(raw, "maxdisk")),
            uptime=int(_num(raw, "uptime")),
        )


class VMSnapshot(BaseModel):
    model_config = {"frozen": True}

    endpoint_id: str
    node: str
    vmid: int
    name: str = ""
    kind: GuestKind = GuestKind.QEMU
    status: str = "unknown"
    cpu: float = 0.0
    maxcpu: int = 0
    mem: int = 0
    maxmem: int = 0
    disk: int = 0
    maxdisk: int = 0
    netin: int = 0
    netout: int = 0
    uptime: int = 0
    template: bool = False

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.endpoint_id, self.node, self.vmid)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.vmid})" if self.name else str(self.vmid)

    @property
    def cpu_percent(self) -> Optional[float]:
        return self.cpu * 100 if self.status == "running" else None

    @property
    def mem_percent(self) -> Optional[float]:
        return usage_percent(self.mem, self.maxmem)

    @property
    def disk_percent(self) -> Optional[float]:
        return usage_percent(self.disk, self.maxdisk)

    @classmethod
    def from_api(
        cls, endpoint_id: str, node: str, kind: GuestKind, raw: dict[str, Any]
    ) -> "VMSnapshot":
        return cls(
            endpoint_id=endpoint_id,
            node=node,
            vmid=int(raw["vmid"]),
            name=raw.get("name") or "",
            kind=kind,
            status=raw.get("status") or "unknown",
            cpu=_num(raw, "cpu"),
            maxcpu=int(_num(raw, "cpus") or _num(raw, "maxcpu")),
            mem=int(_num(raw, "mem")),
            maxmem=int(_num(raw, "maxmem")),
            disk=int(_num(raw, "disk")),
            maxdisk=int(_num(raw, "maxdisk")),
            netin=int(_num(raw, "netin")),
            netout=int(_num(raw, "netout")),
            uptime=int(_num(raw, "uptime")),
            template=bool(raw.get("template")),
        )
