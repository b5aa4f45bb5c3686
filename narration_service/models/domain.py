from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SceneState(str, Enum):
    PENDING = "pending"
    SYNTHESIZING = "synthesizing"
    MEASURING = "measuring"
    ALIGNING = "aligning"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    FREE_SIGNUP = "free_signup"
    REFUND = "refund"
    DEDUCTION_IMAGES = "deduction_images"
    DEDUCTION_AUDIO = "deduction_audio"
    DEDUCTION_VIDEO = "deduction_video"
    DEDUCTION_VIDEO_UPLOAD = "deduction_video_upload"
    DEDUCTION_VIDEO_FROM_IMAGE = "deduction_video_from_image"
    UGC_SCRIPT_GENERATION = "ugc_script_generation"
    UGC_MEDIA_SELECTION = "ugc_media_selection"
    UGC_AUDIO_GENERATION = "ugc_audio_generation"
    UGC_AVATAR_GENERATION = "ugc_avatar_generation"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class MusicCategory(str, Enum):
    UPBEAT = "upbeat"
    CALM = "calm"
    CINEMATIC = "cinematic"
    DRAMATIC = "dramatic"
    AMBIENT = "ambient"
    OTHER = "other"


class WordTimestamp(BaseModel):
    word: str
    start: float
    end: float

    @model_validator(mode="after")
    def check_bounds(self) -> "WordTimestamp":
        if self.start < 0 or self.end < self.start:
            raise ValueError("word timestamp requires 0 <= start <= end")
        return self


class Story(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    background_music_id: Optional[str] = None
    background_music_enabled: bool = False


class Scene(BaseModel):
    id: str
    story_id: str
    order: int
    text: str
    audio_url: Optional[str] = None
    audio_path: Optional[str] = None
    duration: Optional[float] = None
    voice_id: Optional[str] = None
    word_timestamps: Optional[List[WordTimestamp]] = None
    audio_generated_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None


class CreditTransaction(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    amount: int
    type: TransactionType
    description: str
    story_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class MusicTrack(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    description: str = ""
    category: MusicCategory = MusicCategory.OTHER
    file_url: str
    file_path: Optional[str] = None
    duration: float
    uploaded_by: str
    is_preset: bool = False
    created_at: datetime = Field(default_factory=utcnow)
