from datetime import datetime

from pydantic import BaseModel, Field, SecretStr


class ConnectionCreate(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    host: str = Field(min_length=1)
    port: int = Field(default=8006, ge=1, le=65535)
    username: str = Field(min_length=1)
    password: SecretStr
    realm: str = "pam"
    use_tls: bool = True
    timeout: float | None = Field(default=None, gt=0)


class ConnectionResponse(BaseModel):
    endpoint_id: str
    name: str
    host: str
    port: int
    status: str
    last_error: str | None
    last_connected_at: datetime | None
    polling: str | None = None


class ConnectionTestResponse(BaseModel):
    endpoint_id: str
    success: bool
    status: str
    last_error: str | None
