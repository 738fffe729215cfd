"""端点配置、会话与连接状态模型。"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr

UTC = timezone.utc


class ConnectionState(str, enum.Enum):
    """端点连接状态。"""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class EndpointConfig(BaseModel):
    """一个虚拟化集群端点的静态配置。密码使用 SecretStr，repr 和日志中不会出现明文。"""
    id: str = Field(min_length=1)
    name: str = ""
    host: str = Field(min_length=1)
    port: int = Field(default=8006, ge=1, le=65535)
    username: str = Field(min_length=1)
    password: SecretStr
    realm: str = "pam"
    use_tls: bool = True
    timeout: float = Field(default=10.0, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://{self.host}:{self.port}/api2/json"

    @property
    def login(self) -> str:
        """PVE 登录名，形如 root@pam。"""
        if "@" in self.username:
            return self.username
        return f"{self.username}@{self.realm}"

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"password"})


class Session(BaseModel):
    """一次成功认证得到的票据对 (ticket + CSRF token)。"""
    model_config = {"frozen": True}

    ticket: str = Field(repr=False)
    csrf_token: str = Field(repr=False)
    username: str = ""
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ConnectionStatus(BaseModel):
    """端点的可观测健康状态，只由请求执行器的调用结果驱动。"""
    endpoint_id: str
    name: str = ""
    host: str = ""
    port: int = 8006
    status: ConnectionState = ConnectionState.DISCONNECTED
    last_error: Optional[str] = None
    last_connected_at: Optional[datetime] = None
