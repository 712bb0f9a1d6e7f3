from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from lib.gps import Coordinates

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

class AccountStatus(str, Enum):
    PENDING = 'pending'
    ACTIVE = 'active'
    INACTIVE = 'inactive'

class TransactionType(str, Enum):
    PURCHASE = 'purchase'
    USAGE = 'usage'
    REFUND = 'refund'

class InboundMessage(BaseModel):
    """One normalised SMS/MMS delivery"""
    phone_number: str
    receiving_number: str
    body: str = ''
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    language: str = 'en'

    @property
    def has_image(self) -> bool:
        return bool(self.media_url) and (self.media_type or '').startswith('image/')

class Account(BaseModel):
    phone_number: str
    status: AccountStatus = AccountStatus.PENDING
    credits_remaining: int = Field(default=0, ge=0)
    pricing_tier: Optional[str] = None
    selected_categories: List[str] = Field(default_factory=list)
    language: str = 'en'
    twilio_number: Optional[str] = None
    consent_timestamp: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

class Session(BaseModel):
    id: int
    phone_number: str
    messages: List[str] = Field(default_factory=list)
    last_ai_response: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class SessionContext(BaseModel):
    """What the chat model gets to see of the conversation so far"""
    messages: List[str] = Field(default_factory=list)
    last_ai_response: Optional[str] = None

    @property
    def last_user_message(self) -> Optional[str]:
        return self.messages[-1] if self.messages else None

class LocationFix(BaseModel):
    lat: float
    lon: float
    captured_at: datetime

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lon=self.lon)

class Transaction(BaseModel):
    id: Optional[int] = None
    phone_number: str
    type: TransactionType
    credits_delta: int
    description: Optional[str] = None
    external_ref: Optional[str] = None
    created_at: datetime

class CustomAgent(BaseModel):
    id: int
    phone_number: str
    name: str
    description: Optional[str] = None
    system_prompt: str
    active: bool = False
    created_at: datetime
    updated_at: datetime
