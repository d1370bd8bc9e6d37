from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# --- Requests ---


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class HealthProfilePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    diabetes_type: str | None = Field(default=None, alias="diabetesType")
    medications: list[str] = Field(default_factory=list)


class ResearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1, max_length=4000)
    user_id: str = Field(alias="userId", min_length=1)
    conversation_history: list[ConversationTurn] | None = Field(default=None, alias="conversationHistory")
    health_profile: HealthProfilePayload | None = Field(default=None, alias="healthProfile")


# --- Responses ---


class TierInfo(BaseModel):
    tier: int
    label: str
    description: str


class TiersResponse(BaseModel):
    tiers: list[TierInfo]


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    service: str
    providers: list[str]
    prompt_version: str = Field(alias="promptVersion")
