"""Pydantic schemas for roulette socket payloads."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
	text: str = Field(default="", description="Message body; trimmed and capped server side")


class ReactionRequest(BaseModel):
	emoji: str = Field(default="", description="One of the quick reactions or any short emoji")


class ErrorPayload(BaseModel):
	code: str
	message: str


class AckPayload(BaseModel):
	ok: bool = True
	quick_reactions: List[str]

