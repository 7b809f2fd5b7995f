"""Structured shapes exchanged with the AI-model collaborator and the callback worker."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ReadingSection(BaseModel):
    domain: str = ""
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class Ritual(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    instructions: list[str] = Field(default_factory=list)


class PdfContent(BaseModel):
    """Narrative sections of the reading; the required ones must be non-empty."""

    introduction: str = Field(min_length=1)
    archetype_reveal: str = Field(min_length=1)
    sections: list[ReadingSection] = Field(min_length=1)
    karmic_insights: list[str] = Field(default_factory=list)
    life_mission: str = ""
    rituals: list[Ritual] = Field(default_factory=list)
    conclusion: str = ""


class ReadingSynthesis(BaseModel):
    archetype: str = Field(min_length=1)
    keywords: list[str] = Field(default_factory=list)
    emotional_state: str = ""
    key_blockage: str = ""


class TimelineDay(BaseModel):
    day: int = Field(ge=1)
    title: str
    action: str
    mantra: str = ""
    action_type: str = Field(default="REFLECTION", alias="actionType")

    model_config = ConfigDict(populate_by_name=True)


class OracleResponse(BaseModel):
    """Expected structure of a successful AI-model response."""

    pdf_content: PdfContent
    synthesis: ReadingSynthesis
    timeline: list[TimelineDay] = Field(default_factory=list)


class GenerationOutcome(BaseModel):
    order_id: str
    status: str
    outcome: Literal["succeeded", "failed", "abandoned"]
    pdf_url: str | None = None
    archetype: str | None = None
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
