"""Model catalog entries consumed by the usage normalizer."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ModelCost(BaseModel):
    """Prices in currency units per million tokens."""

    input: float = 0
    output: float = 0
    cache_read: float = 0
    cache_write: float = 0
    context_over_200k: ModelCost | None = None


class ModelInfo(BaseModel):
    id: str
    provider_id: str
    name: str | None = None
    cost: ModelCost | None = Field(default=None, description="Missing pricing bills every step at 0")
