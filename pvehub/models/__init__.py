"""引擎内部使用的 Pydantic 数据模型。"""
from pvehub.models.alert import (
    AlertKind,
    AlertLevel,
    AlertRecord,
    AlertSource,
    AlertStatus,
    Thresholds,
)
from pvehub.models.batch import (
    Action,
    BackupAction,
    BatchResult,
    BatchSummary,
    BatchTarget,
    PowerAction,
    PowerActionName,
    ShellAction,
)
from pvehub.models.endpoint import ConnectionState, ConnectionStatus, EndpointConfig, Session
from pvehub.models.event import Event, EventKind
from pvehub.models.snapshot import GuestKind, NodeSnapshot, VMSnapshot, usage_percent

__all__ = [
    "Action",
    "AlertKind",
    "AlertLevel",
    "AlertRecord",
    "AlertSource",
    "AlertStatus",
    "BackupAction",
    "BatchResult",
    "BatchSummary",
    "BatchTarget",
    "ConnectionState",
    "ConnectionStatus",
    "EndpointConfig",
    "Event",
    "EventKind",
    "GuestKind",
    "NodeSnapshot",
    "PowerAction",
    "PowerActionName",
    "Session",
    "ShellAction",
    "Thresholds",
    "VMSnapshot",
    "usage_percent",
]
