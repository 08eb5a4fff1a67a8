"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateMessageRequest(BaseModel):
    """
    Body of POST /daos/{dao_id}/messages.

    Body length is checked by the engine so that empty and over-long
    messages are rejected as BAD_PARAMS rather than schema errors.
    """
    message: str = Field(..., description="Message text, 1-256 characters")
    reply_to: Optional[str] = Field(
        None,
        description="Id of the message being answered (root or reply)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"message": "gm", "reply_to": None}
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Error code (BAD_PARAMS, NOT_FOUND, UNAUTHORIZED, INTERNAL_ERROR)")


class MessageResponse(BaseModel):
    """A single forum message as stored."""
    id: str
    dao_id: str
    author_id: str
    body: Optional[str] = Field(None, description="Withheld for deleted messages")
    created_at: datetime
    deleted_at: Optional[datetime] = None
    root_message_id: Optional[str] = None
    reply_to_message_id: Optional[str] = None
    reply_to_author_id: Optional[str] = None

    model_config = {"from_attributes": True}


class MessageWithRepliesResponse(MessageResponse):
    """A root message with its reply count and oldest replies."""
    reply_count: int = Field(..., ge=0)
    replies: list[MessageResponse] = Field(default_factory=list)


class MessagePageResponse(BaseModel):
    """
    Response model for GET /daos/{dao_id}/messages.

    - list: root messages on the requested (clamped) page, newest first
    - total: total number of visible root messages
    - pages: number of pages at the requested page size
    """
    list: List[MessageWithRepliesResponse] = Field(default_factory=lambda: [])
    total: int = Field(..., ge=0)
    pages: int = Field(..., ge=0)


class ReplyCursor(BaseModel):
    next: Optional[int] = None
    previous: Optional[int] = None


class ReplyWindowResponse(BaseModel):
    """Response model for GET /messages/{message_id}/replies."""
    items: list[MessageResponse] = Field(default_factory=list)
    total_items: int = Field(..., ge=0)
    cursor: ReplyCursor


class MessageThreadResponse(MessageResponse):
    """
    A message with the chain of messages it replies to.

    reply_to nests towards the root; deleted ancestors appear with
    deleted=True and no body.
    """
    deleted: bool = False
    reply_to: Optional["MessageThreadResponse"] = None


class MessageStatsResponse(BaseModel):
    """
    Response model for GET /daos/{dao_id}/messages/stats.

    - total: messages ever posted in the DAO
    - self_total / self_24h / self_7d: messages by the DAO owner
    """
    total: int = Field(..., ge=0)
    self_total: int = Field(..., ge=0)
    self_24h: int = Field(..., ge=0)
    self_7d: int = Field(..., ge=0)


class ResyncResponse(BaseModel):
    roots: int = Field(..., ge=0)
    replies: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


MessageThreadResponse.model_rebuild()
