"""Pydantic schemas for the message service."""

from __future__ import annotations

from pydantic import BaseModel, Field

__all__ = [
    "NewMessage",
    "Message",
    "PostResponse",
    "PoolStatsResponse",
]


class NewMessage(BaseModel):
    """Payload accepted by ``POST /``."""
    username: str = Field(default="anonymous", description="Stored as given; may be empty.")
    message: str = Field(min_length=1, description="Message text; required.")


class Message(BaseModel):
    id: int
    username: str
    message: str
    timestamp: int = Field(description="Unix timestamp (seconds) when the message was stored.")


class PostResponse(BaseModel):
    timestamp: int


class PoolStatsResponse(BaseModel):
    max_size: int
    total: int
    idle: int
    leased: int
    opening: int
    waiting: int
    closed: bool
    opened: int
    discarded: int
    timeouts: int
