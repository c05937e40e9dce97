from typing import Any, Literal

from pydantic import BaseModel, Field


class JobCreateRequest(BaseModel):
    user_id: str
    type: str
    batch_size: int = 1
    payload: dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    job_id: str
    user_id: str
    type: str
    batch_size: int
    payload: dict[str, Any] = Field(default_factory=dict)
    status: str
    credits_reserved: int = 0
    result: Any = None
    error: str | None = None
    failure_code: str | None = None
    attempt_count: int = 0
    progress: int = 0
    refunded: bool = False
    created_at: str
    updated_at: str
    started_at: str | None = None
    completed_at: str | None = None


class CancelRequest(BaseModel):
    user_id: str | None = None


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int
    total_earned: int
    total_spent: int


class CreditCheckResponse(BaseModel):
    sufficient: bool
    balance: int
    required: int
    shortfall: int


class AdminGrantRequest(BaseModel):
    user_id: str
    amount: int
    kind: Literal["recharge", "gift"] = "recharge"
    note: str = "manual grant"


class TaskCompleteCallback(BaseModel):
    job_id: str
    result: Any = None


class TaskFailedCallback(BaseModel):
    job_id: str
    error: str | None = None
