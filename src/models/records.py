# src/models/records.py

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ClientSummary(BaseModel):
    """
    Minimized client projection for lists, searches and routine work.
    Carries no address, notes or financial totals.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str
    last_name: str
    preferred_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    assistance_count: int = 0
    last_assistance_date: Optional[date] = None
    risk_level: Optional[str] = None
    flagged_for_review: bool = False


class ClientRecord(BaseModel):
    """Full client projection, only for detail views that need every field"""
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str
    last_name: str
    preferred_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    county: Optional[str] = None
    notes: Optional[str] = None
    total_assistance_received: float = 0.0
    assistance_count: int = 0
    last_assistance_date: Optional[date] = None
    risk_level: Optional[str] = None
    flagged_for_review: bool = False
    review_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_summary(self) -> ClientSummary:
        return ClientSummary(
            id=self.id,
            first_name=self.first_name,
            last_name=self.last_name,
            preferred_name=self.preferred_name,
            phone=self.phone,
            email=self.email,
            city=self.city,
            assistance_count=self.assistance_count,
            last_assistance_date=self.last_assistance_date,
            risk_level=self.risk_level,
            flagged_for_review=self.flagged_for_review,
        )


class AccessType(str, Enum):
    FULL = "full"
    SUMMARY = "summary"
    SEARCH = "search"
    DENIED = "denied"


class AccessLogEntry(BaseModel):
    """One access attempt against protected records. Never mutated once written."""
    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    accessed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    principal_id: str
    access_type: AccessType
    record_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
