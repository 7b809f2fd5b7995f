"""Inbound generation-callback envelope."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CallbackContent(BaseModel):
    """Content fields a worker may deliver; all optional."""

    archetype: str | None = None
    reading: str | None = None
    pdf_url: str | None = Field(default=None, alias="pdfUrl")
    audio_url: str | None = Field(default=None, alias="audioUrl")
    ritual: str | None = None
    blockages_analysis: str | None = Field(default=None, alias="blockagesAnalysis")
    mandala_svg: str | None = Field(default=None, alias="mandalaSvg")
    soul_profile: str | None = Field(default=None, alias="soulProfile")

    model_config = ConfigDict(populate_by_name=True)


class CallbackRequest(BaseModel):
    """Body of an inbound generation callback."""

    order_id: str = Field(min_length=1, alias="orderId")
    order_number: str = Field(min_length=1, alias="orderNumber")
    status: Literal["ready", "failed"]
    content: CallbackContent = Field(default_factory=CallbackContent)
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)
