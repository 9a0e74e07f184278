"""Pydantic schemas for post endpoints."""

from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel


class PostSummaryResponse(BaseModel):
    id: str
    title: str
    snippet: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    published_at: datetime | None = None

    model_config = {"from_attributes": True}


class PostDetailResponse(PostSummaryResponse):
    html: str
