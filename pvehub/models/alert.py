"""
告警数据模型 (Alert Models)

告警状态单调前进：active → acknowledged → resolved。
同一 (资源, 维度) 同一时刻最多只有一条未关闭的告警；再次越限会新建一条记录。
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class AlertLevel(str, enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AlertKind(str, enum.Enum):
    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    NETWORK = "network"
    NODE_OFFLINE = "node_offline"
    VM_STATUS = "vm_status"
    CONNECTION_LOST = "connection_lost"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertSource(BaseModel):
    """告警来源资源。"""
    model_config = {"frozen": True}

    endpoint_id: str
    resource_type: Literal["endpoint", "node", "vm"]
    node: Optional[str] = None
    vmid: Optional[int] = None

    @property
    def label(self) -> str:
        if self.resource_type == "vm":
            return f"{self.endpoint_id}/{self.node}/{self.vmid}"
        if self.resource_type == "node":
            return f"{self.endpoint_id}/{self.node}"
        return self.endpoint_id


class AlertRecord(BaseModel):
    id: str
    level: AlertLevel
    kind: AlertKind
    status: AlertStatus = AlertStatus.ACTIVE
    title: str
    description: str = ""
    source: AlertSource
    metric_value: Optional[float] = None
    threshold: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class Thresholds(BaseModel):
    """单个维度的阈值。None 表示该级别不启用，严格大于阈值才算越限。"""
    critical: Optional[float] = None
    warning: Optional[float] = None
    info: Optional[float] = None

    def level_for(self, value: Optional[float]) -> Optional[tuple[AlertLevel, float]]:
        """返回命中的最高级别及其阈值，未越限返回 None。"""
        if value is None:
            return None
        for level, limit in (
            (AlertLevel.CRITICAL, self.critical),
            (AlertLevel.WARNING, self.warning),
            (AlertLevel.INFO, self.info),
        ):
            if limit is not None and value > limit:
                return level, limit
        return None

    @property
    def enabled(self) -> bool:
        return any(v is not None for v in (self.critical, self.warning, self.info))
