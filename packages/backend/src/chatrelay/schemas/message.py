"""Pydantic schemas for chat messages."""

from pydantic import BaseModel, Field


class MessageSend(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000)
    author: str = Field(..., min_length=1, max_length=100)


class MessageRead(BaseModel):
    content: str
    author: str


class SendResult(BaseModel):
    sent: bool
