from typing import Literal

from pydantic import BaseModel, Field


class AlertAckRequest(BaseModel):
    by: str = "system"


class AlertBulkRequest(BaseModel):
    action: Literal["acknowledge", "resolve", "delete"]
    ids: list[str] = Field(min_length=1)


class AlertBulkResponse(BaseModel):
    action: str
    processed: int
    failed: list[dict]
