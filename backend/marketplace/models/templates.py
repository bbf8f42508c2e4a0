"""
Pydantic Template Access Models
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TemplateAccess(BaseModel):
    """Access token record as shown to the token holder (token value omitted)."""
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    agent_id: str
    email: str
    used: bool
    use_count: int
    last_used_at: Optional[datetime] = None
    revoked: bool
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class RevokeRequest(BaseModel):
    """Body of POST /templates/revoke/{token}."""
    reason: str = "manual_revocation"
    revoked_by: str = "admin"
