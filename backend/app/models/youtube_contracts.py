from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class ErrorDetail(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    message: str


class ConnectUrlResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    authorization_url: str


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    refresh_token: str | None = Field(default=None, max_length=2048)

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _normalize_refresh_token(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class RefreshTokenResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    access_token: str
    expires_in: int
    expires_at: datetime


class ImportTaskResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str
    channel_id: str
    status: Literal["pending", "running", "succeeded", "failed"]
    videos_imported: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ImportAcceptedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    message: str
    task: ImportTaskResponse


class ChannelStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    success: bool
    subscribers: int
    views: int
    videos: int
    hidden_subscriber_count: bool = Field(alias="hiddenSubscriberCount")
    title: str
    description: str
    thumbnail: str | None = None


class AnalysisVideoInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    video_title: str = Field(max_length=500)
    views: int = Field(default=0, ge=0)
    likes: int = Field(default=0, ge=0)
    comments: int = Field(default=0, ge=0)
    published_at: str | None = None
    tags: list[str] = Field(default_factory=list, max_length=100)


class AnalysisChannelInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(default="", max_length=500)
    subscribers: int = Field(default=0, ge=0)
    total_views: int = Field(default=0, ge=0, alias="totalViews")


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    videos: list[AnalysisVideoInput] = Field(max_length=200)
    channel_stats: AnalysisChannelInput = Field(alias="channelStats")
    analysis_type: Literal["channel", "ideas"] = Field(alias="analysisType")
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class AnalyzeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    analysis: str | None = None
    ideas: list[str] | None = None
    generated_at: datetime = Field(alias="generatedAt")
    cached: bool
