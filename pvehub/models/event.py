"""广播事件模型。"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventKind(str, enum.Enum):
    CONNECTION = "connection"
    NODE = "node"
    VM = "vm"
    COMMAND_RESULT = "command_result"
    ALERT = "alert"


class Event(BaseModel):
    seq: int
    kind: EventKind
    action: str  # added / removed / changed / created / resolved ...
    endpoint_id: Optional[str] = None
    key: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
