from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MediaType = Literal["image/jpeg", "image/png", "image/gif", "image/webp"]


class AnalyzeImageRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    image: str | None = None
    # sent by the mobile client, not used
    type: str | None = None
    media_type: MediaType | None = None


class NutritionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kcal: int
    protein: float


class LabelReading(BaseModel):
    """Values as the model wrote them, before rounding."""

    model_config = ConfigDict(extra="ignore", strict=True)

    kcal: float = Field(allow_inf_nan=False)
    protein: float = Field(allow_inf_nan=False)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
