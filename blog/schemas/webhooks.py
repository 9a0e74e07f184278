"""Pydantic schemas for the GitHub push webhook payload (only the fields we use)."""

from __future__ import annotations

from pydantic import BaseModel


class RepositoryInfo(BaseModel):
    full_name: str


class PushEvent(BaseModel):
    ref: str
    before: str = ""
    after: str = ""
    deleted: bool = False
    repository: RepositoryInfo
