"""Character model: the AI persona a user chats with."""

from sqlalchemy import Boolean, Column, String, Text

from .base import BaseModel


class Character(BaseModel):
    __tablename__ = "characters"

    owner_id = Column(String(36), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    avatar = Column(String(1024), nullable=True)
    bio = Column(Text, nullable=True)
    # Behavioral directive appended to the system prompt
    origin_prompt = Column(Text, nullable=True)
    is_public = Column(Boolean, default=False, nullable=False)
