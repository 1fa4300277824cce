import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from utils.timestamp import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# ---------- Enumerations ----------

class Tier(str, Enum):
    """Service level derived from the wallet's AU token holdings."""
    FREE_TRIAL = "Free Trial"
    ELECTRUM = "Electrum"
    PRO = "Pro"
    GOLD = "Gold"


class Personality(str, Enum):
    AUTISTIC_AI = "AUtistic AI"
    LEVEL1_ASD = "Level 1 ASD"
    SAVANTIST = "Savantist"


class Modality(str, Enum):
    TEXT = "TEXT"
    VOICE = "VOICE"
    IMAGE = "IMAGE"


class Resource(str, Enum):
    """Quota axes tracked on a rate-limit window."""
    MESSAGES = "messages"
    VOICE_MINUTES = "voice_minutes"


# ---------- Tier / quota models ----------

class TierLimits(BaseModel):
    model_config = {"frozen": True}

    message_limit: int
    message_period_hours: int
    voice_limit: int
    voice_period_hours: int

    def limit_for(self, resource: Resource) -> int:
        return self.message_limit if resource == Resource.MESSAGES else self.voice_limit

    def period_hours_for(self, resource: Resource) -> int:
        return self.message_period_hours if resource == Resource.MESSAGES else self.voice_period_hours


class TokenBalance(BaseModel):
    balance: float = 0
    tier: Tier = Tier.FREE_TRIAL


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    reset_time: datetime


# ---------- Persisted entities ----------

class User(BaseModel):
    """Administrative account. Sessions linked to an admin user are unmetered."""
    id: str = Field(default_factory=new_id)
    username: str
    password_hash: str
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    fingerprint: str
    wallet_address: Optional[str] = None
    token_balance: float = 0
    tier: Tier = Tier.FREE_TRIAL
    user_id: Optional[str] = None  # admin link
    memory_bank: Optional[str] = None
    cookie_token: Optional[str] = None
    cookie_expiry: Optional[datetime] = None
    last_seen: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    title: Optional[str] = None
    summary: Optional[str] = None
    last_summary_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    is_image: bool = False
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class AudioCacheEntry(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    session_id: str
    conversation_id: str
    message_id: Optional[str] = None
    audio_url: str
    secure_token: str
    text: str
    duration: Optional[int] = None  # seconds
    voice_settings: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class RateLimitWindow(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    period_start: datetime
    period_end: datetime
    messages_used: int = 0
    voice_minutes_used: int = 0

    def is_active(self, now: datetime) -> bool:
        return now < self.period_end

    def used(self, resource: Resource) -> int:
        return self.messages_used if resource == Resource.MESSAGES else self.voice_minutes_used


class WebhookLog(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    request_data: Dict[str, Any]
    response_data: Optional[Dict[str, Any]] = None
    status: Literal["success", "error"]
    created_at: datetime = Field(default_factory=utcnow)


# ---------- Request bodies ----------

_BASE58_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_wallet_address(value: str) -> bool:
    return bool(_BASE58_ADDRESS_RE.match(value or ""))


class WalletConnectRequest(BaseModel):
    wallet_address: str

    @field_validator("wallet_address")
    @classmethod
    def _check_address(cls, v: str) -> str:
        v = (v or "").strip()
        if not is_valid_wallet_address(v):
            raise ValueError("wallet_address must be a base58 Solana address")
        return v


class MemoryBankUpdate(BaseModel):
    memory_bank: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    request_image: bool = False
    personality: Personality = Personality.AUTISTIC_AI


class VoiceGenerateRequest(BaseModel):
    text: str = Field(min_length=1)
    conversation_id: str
    message_id: Optional[str] = None


class AdminLoginRequest(BaseModel):
    username: str
    password: str


# ---------- Response bodies ----------

class QuotaView(BaseModel):
    remaining: int
    limit: int
    reset_time: datetime

    @classmethod
    def from_result(cls, result: RateLimitResult, *, consumed: int = 0) -> "QuotaView":
        return cls(
            remaining=max(0, result.remaining - consumed),
            limit=result.limit,
            reset_time=result.reset_time,
        )


class SessionView(BaseModel):
    tier: Tier
    token_balance: float
    wallet_address: Optional[str] = None
    message_limit: QuotaView
    voice_limit: QuotaView


class WalletView(BaseModel):
    wallet_address: Optional[str] = None
    token_balance: float
    tier: Tier
    degraded: bool = False


class SendMessageResponse(BaseModel):
    conversation: Conversation
    user_message: Message
    ai_message: Message
    rate_limit: QuotaView
    enrichment_degraded: bool = False


class VoiceGenerateResponse(BaseModel):
    audio_url: str
    secure_token: str
    duration: Optional[int] = None
    voice_limit: QuotaView
