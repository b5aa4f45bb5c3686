from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import MusicTrack, WordTimestamp


class StoryAudioRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    story_id: str = Field(..., validation_alias="story_id")
    voice_id: Optional[str] = Field(default=None, validation_alias="voice_id")

    @field_validator("story_id")
    @classmethod
    def validate_story_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("story_id is required")
        return value.strip()


class SceneAudioRequest(BaseModel):
    voice_id: Optional[str] = None


class SceneDone(BaseModel):
    scene_id: str
    order: int
    status: Literal["done"] = "done"
    audio_url: str
    duration: float
    voice_id: str
    word_timestamps: Optional[List[WordTimestamp]] = None


class SceneFailed(BaseModel):
    scene_id: str
    order: int
    status: Literal["failed"] = "failed"
    error: str


SceneResult = Annotated[Union[SceneDone, SceneFailed], Field(discriminator="status")]


class BatchAudioResponse(BaseModel):
    story_id: str
    voice_id: str
    total_scenes: int
    successful_scenes: int
    credits_charged: int
    billing_error: Optional[str] = None
    updated_scenes: List[SceneResult]


class SceneAudioResponse(BaseModel):
    scene: SceneDone


class AlignmentResponse(BaseModel):
    scene_id: str
    word_timestamps: List[WordTimestamp]


class MusicImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., validation_alias="name")
    source_url: Optional[str] = Field(default=None, validation_alias="source_url")
    platform_reference: Optional[str] = Field(default=None, validation_alias="platform_reference")
    category: Optional[str] = Field(default=None, validation_alias="category")
    description: Optional[str] = Field(default=None, validation_alias="description")


class MusicTrackResponse(BaseModel):
    track: MusicTrack


class MusicListResponse(BaseModel):
    items: List[MusicTrack]


class MusicDeleteResponse(BaseModel):
    track_id: str
    stories_detached: int


class CreditTransactionInfo(BaseModel):
    id: str
    amount: int
    type: str
    description: str
    story_id: Optional[str] = None
    created_at: datetime


class CreditsResponse(BaseModel):
    balance: int
    history: Optional[List[CreditTransactionInfo]] = None
