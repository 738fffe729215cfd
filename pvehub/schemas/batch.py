from pydantic import BaseModel, Field

from pvehub.models.batch import Action, BatchResult, BatchSummary, BatchTarget


# ── Dispatch ──

class ActionRequest(BaseModel):
    target: BatchTarget
    action: Action


class BatchRequest(BaseModel):
    targets: list[BatchTarget] = Field(default_factory=list)
    action: Action


class BatchResponse(BaseModel):
    results: list[BatchResult]
    summary: BatchSummary
