from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class Claims(BaseModel):
    """Identity extracted from a validated bearer token."""

    model_config = ConfigDict(frozen=True)

    account_id: Optional[int] = None
    customer_id: Optional[str] = None
    issuer: Optional[str] = None
    subject: Optional[str] = None
    audience: List[str] = Field(default_factory=list)
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def tenant_id(self) -> str:
        customer_id = (self.customer_id or "").strip()
        if customer_id:
            return customer_id
        if self.account_id:
            return str(self.account_id)
        return ""
