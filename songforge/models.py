"""Status enums, the song state machine, and API request/response models."""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SongStatus(str, Enum):
    PENDING = "pending"
    GENERATING_MUSIC = "generating_music"
    CONVERTING_VOICE = "converting_voice"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class VoiceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class LedgerType(str, Enum):
    USAGE = "usage"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"


class LyricsMode(str, Enum):
    MANUAL = "manual"
    AI = "ai"
    INSTRUMENTAL = "instrumental"


TERMINAL_STATUSES: FrozenSet[str] = frozenset({SongStatus.COMPLETED.value, SongStatus.FAILED.value})

# Forward-only; failed is reachable from every non-terminal state
SONG_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    SongStatus.PENDING.value: frozenset({SongStatus.GENERATING_MUSIC.value, SongStatus.FAILED.value}),
    SongStatus.GENERATING_MUSIC.value: frozenset({
        SongStatus.CONVERTING_VOICE.value, SongStatus.COMPLETED.value, SongStatus.FAILED.value,
    }),
    SongStatus.CONVERTING_VOICE.value: frozenset({
        SongStatus.MERGING.value, SongStatus.COMPLETED.value, SongStatus.FAILED.value,
    }),
    SongStatus.MERGING.value: frozenset({SongStatus.COMPLETED.value, SongStatus.FAILED.value}),
    SongStatus.COMPLETED.value: frozenset(),
    SongStatus.FAILED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in SONG_TRANSITIONS.get(current, frozenset())


# ============================================================================
# Request models
# ============================================================================

class SongGenerationRequest(BaseModel):
    topic: str = Field(..., description="What the song is about")
    genre: str = Field(..., description="Musical genre, e.g. pop")
    mood: Optional[str] = Field(default=None, description="Mood, e.g. happy")
    language: Optional[str] = Field(default="english")
    tempo: Optional[str] = Field(default=None, description="slow, medium or fast")
    important_notes: Optional[str] = Field(default=None, alias="importantNotes")
    lyrics: Optional[str] = None
    title: Optional[str] = None
    lyrics_mode: Optional[LyricsMode] = Field(default=None, alias="lyricsMode")
    voice_profile_id: Optional[str] = Field(default=None, alias="voiceProfileId")
    pitch_shift: int = Field(default=0, ge=-12, le=12, alias="pitchShift")

    model_config = ConfigDict(populate_by_name=True)


class LyricsRequest(BaseModel):
    topic: str
    language: Optional[str] = "english"
    purpose: Optional[str] = None
    important_notes: Optional[str] = Field(default=None, alias="importantNotes")
    genre: Optional[str] = None
    mood: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class VoiceUpdateRequest(BaseModel):
    is_default: bool


class PromptCreateRequest(BaseModel):
    type: str = Field(..., pattern="^(song|lyrics)$")
    name: str
    content: str
    activate: bool = False


class MusicProviderRequest(BaseModel):
    provider: str


class CreditAdjustmentRequest(BaseModel):
    amount: int
    description: str


class UserSignup(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class UserLogin(BaseModel):
    email: str
    password: str


# ============================================================================
# Response models
# ============================================================================

class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    credits_balance: int
    created_at: str


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class GenerateSongResponse(BaseModel):
    songId: str
    status: SongStatus


class SongResponse(BaseModel):
    id: str
    title: Optional[str]
    status: SongStatus
    genre: Optional[str] = None
    mood: Optional[str] = None
    language: Optional[str] = None
    lyrics: Optional[str] = None
    prompt: Optional[str] = None
    voice_profile_id: Optional[str] = None
    audio_url: Optional[str] = None
    instrumental_url: Optional[str] = None
    original_vocals_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    created_at: str
    updated_at: str


class VoiceProfileResponse(BaseModel):
    id: str
    name: str
    vendor_voice_id: Optional[str] = None
    status: VoiceStatus
    is_default: bool
    created_at: str


class LedgerEntryResponse(BaseModel):
    id: str
    amount: int
    balance_after: int
    type: LedgerType
    description: Optional[str] = None
    song_id: Optional[str] = None
    created_at: str


class CreditsResponse(BaseModel):
    balance: int
    transactions: List[LedgerEntryResponse]
