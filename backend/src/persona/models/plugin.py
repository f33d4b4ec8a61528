"""Plugin and PluginSubscription models.

Plugins are user-authored code bodies with a JSON Schema describing their
arguments. They run in the plugin sandbox when a conversation invokes them.
"""

from enum import Enum

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import BaseModel


class PluginStatus(str, Enum):
    PENDING = "pending"
    REJECTED = "rejected"
    APPROVED = "approved"
    ARCHIVED = "archived"


class Plugin(BaseModel):
    __tablename__ = "plugins"

    author_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(String(32), default="1.0.0", nullable=False)
    schema = Column(JSON, nullable=True)
    code = Column(Text, nullable=False)
    status = Column(String(16), default=PluginStatus.PENDING.value, nullable=False, index=True)

    subscriptions = relationship(
        "PluginSubscription", back_populates="plugin", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'rejected', 'approved', 'archived')", name="ck_plugins_status"),
    )

    @property
    def is_approved(self) -> bool:
        return self.status == PluginStatus.APPROVED.value


class PluginSubscription(BaseModel):
    __tablename__ = "plugin_subscriptions"

    user_id = Column(String(36), nullable=False, index=True)
    plugin_id = Column(String(36), ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    plugin = relationship("Plugin", back_populates="subscriptions")

    __table_args__ = (UniqueConstraint("user_id", "plugin_id", name="uq_plugin_subscriptions_user_plugin"),)
