"""
批量调度数据模型 (Batch Dispatch Models)

动作 (Action) 以 type 字段区分三种形态：电源操作、节点 Shell 命令和备份。
BatchResult 与 BatchTarget 一一对应，顺序与输入一致。
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from pvehub.models.snapshot import GuestKind


class PowerActionName(str, enum.Enum):
    START = "start"
    STOP = "stop"
    SHUTDOWN = "shutdown"
    REBOOT = "reboot"
    SUSPEND = "suspend"
    RESUME = "resume"


class PowerAction(BaseModel):
    """虚拟机/容器电源操作。"""
    type: Literal["power"] = "power"
    name: PowerActionName

    @property
    def label(self) -> str:
        return self.name.value


class ShellAction(BaseModel):
    """在节点上执行 Shell 命令，执行前必须通过危险命令检查。"""
    type: Literal["shell"] = "shell"
    command: str = Field(min_length=1)
    timeout: int = Field(default=30, ge=1, le=3600)

    @property
    def label(self) -> str:
        return "shell"


class BackupAction(BaseModel):
    """vzdump 备份。"""
    type: Literal["backup"] = "backup"
    storage: Optional[str] = None
    mode: Literal["snapshot", "suspend", "stop"] = "snapshot"
    compress: str = "zstd"
    notes: Optional[str] = None

    @property
    def label(self) -> str:
        return "backup"


Action = Annotated[Union[PowerAction, ShellAction, BackupAction], Field(discriminator="type")]


class BatchTarget(BaseModel):
    """批量操作目标。vmid 为空表示节点级目标（仅 Shell 命令）。"""
    model_config = {"frozen": True}

    endpoint_id: str
    node: str
    vmid: Optional[int] = None
    kind: GuestKind = GuestKind.QEMU


class BatchResult(BaseModel):
    target: BatchTarget
    action: str
    success: bool
    skipped: bool = False
    output: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0


class BatchSummary(BaseModel):
    """批量执行汇总，数值总是从结果列表推导。"""
    total: int
    succeeded: int
    skipped: int
    failed: int

    @classmethod
    def from_results(cls, results: list[BatchResult]) -> "BatchSummary":
        succeeded = sum(1 for r in results if r.success and not r.skipped)
        skipped = sum(1 for r in results if r.skipped)
        return cls(
            total=len(results),
            succeeded=succeeded,
            skipped=skipped,
            failed=len(results) - succeeded - skipped,
        )
