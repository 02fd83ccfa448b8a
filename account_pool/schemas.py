from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Buyer(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class Purchase(BaseModel):
    model_config = ConfigDict(extra="allow")

    transaction: str = Field(..., min_length=1)
    status: str
    buyer: Buyer


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    purchase: Purchase


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    event: str = Field(..., min_length=1)
    data: WebhookData

    @property
    def transaction_id(self) -> str:
        return self.data.purchase.transaction

    @property
    def buyer(self) -> Buyer:
        return self.data.purchase.buyer


class WebhookResponse(BaseModel):
    success: bool
    message: str
    outcome: Optional[str] = None
    duplicate: bool = False
    account_id: Optional[int] = None
    username: Optional[str] = None


class PoolStats(BaseModel):
    available: int
    occupied: int
    suspended: int
    total: int
    last_assigned_at: Optional[datetime] = None
