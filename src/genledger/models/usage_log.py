"""UsageLog entity - Write-only analytics record for terminal jobs and payments."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from genledger.core.timezone import DateTimeUTC, utcnow


class UsageLog(SQLModel, table=True):
    """UsageLog feeds downstream analytics; nothing in the core reads it back."""

    __tablename__ = "usage_logs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True)
    action: str = Field(max_length=50)  # "generate_image" or "payment"
    credits_used: int = Field(default=0)
    success: bool = Field(default=True)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)
