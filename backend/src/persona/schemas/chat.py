"""
Pydantic schemas for chats and messages.

Message content is a list of typed parts, discriminated by ``type``.
"""

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = Field(..., min_length=1)


class ImageUrl(BaseModel):
    url: str = Field(..., min_length=1)


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImageUrlPart], Field(discriminator="type")]


class SendMessageRequest(BaseModel):
    """Schema for sending a message to a chat."""

    content: List[ContentPart] = Field(..., min_length=1, description="Message parts")

    def content_dicts(self) -> List[dict]:
        return [part.model_dump() for part in self.content]


class CreatePrivateChatRequest(BaseModel):
    """Schema for opening a one-on-one chat with a character."""

    character_id: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    """Schema for chat responses."""

    id: str
    owner_id: str
    name: Optional[str] = None
    is_group: bool
    last_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MessageSender(BaseModel):
    type: Literal["user", "character"]
    id: Optional[str] = None


class MessageResponse(BaseModel):
    """A stored message as returned to clients."""

    id: str
    chat_id: str
    role: Literal["user", "character"]
    content: List[Any]
    sender: MessageSender
    created_at: datetime

    @classmethod
    def from_message(cls, message) -> "MessageResponse":
        sender_id = message.sender_profile_id if message.is_from_user else message.sender_character_id
        return cls(
            id=message.id,
            chat_id=message.chat_id,
            role=message.sender_type,
            content=message.content or [],
            sender=MessageSender(type=message.sender_type, id=sender_id),
            created_at=message.created_at,
        )


class MessagePage(BaseModel):
    """A page of messages, oldest first, with the cursor for older ones."""

    messages: List[MessageResponse]
    next: Optional[datetime] = Field(None, description="Pass as `before` to fetch the previous page")
