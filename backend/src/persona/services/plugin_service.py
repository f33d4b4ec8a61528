"""Plugin catalogue and per-user subscriptions.

New plugins start ``pending`` and only ``approved`` plugins are offered to
the chat model. Changing an approved plugin's code or schema sends it back
to review.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings_instance
from ..core.exceptions import AuthorizationError, ConflictError, PluginNotFoundError, ValidationError
from ..core.logging import get_logger
from ..models.plugin import Plugin, PluginStatus, PluginSubscription

logger = get_logger(__name__)

_EDITABLE_FIELDS = ("name", "description", "version", "schema", "code")
_REVIEWED_FIELDS = ("schema", "code")


class PluginService:
    def __init__(self, db: AsyncSession, max_code_length: int | None = None):
        self.db = db
        self.max_code_length = max_code_length or get_settings_instance().plugin_max_code_length

    def _validate_definition(self, code: str | None, schema: Any) -> None:
        if code is not None:
            if not code.strip():
                raise ValidationError("Plugin code must not be empty")
            if len(code) > self.max_code_length:
                raise ValidationError(
                    f"Plugin code exceeds maximum length of {self.max_code_length} characters",
                    details={"code_length": len(code)},
                )
        if schema is not None and not isinstance(schema, dict):
            raise ValidationError("Plugin schema must be a JSON object")

    async def get_plugin(self, plugin_id: str) -> Plugin:
        plugin = await self.db.get(Plugin, plugin_id)
        if plugin is None:
            raise PluginNotFoundError(plugin_id)
        return plugin

    async def list_plugins(self, status: str | None = None, author_id: str | None = None) -> list[Plugin]:
        """Approved plugins by default; an author sees all of their own."""
        stmt = select(Plugin).order_by(Plugin.created_at.desc())
        if status:
            stmt = stmt.where(Plugin.status == status)
        elif not author_id:
            stmt = stmt.where(Plugin.status == PluginStatus.APPROVED.value)
        if author_id:
            stmt = stmt.where(Plugin.author_id == author_id)
        return list((await self.db.execute(stmt)).scalars().all())

    async def create_plugin(
        self,
        author_id: str,
        name: str,
        code: str,
        description: str | None = None,
        schema: dict[str, Any] | None = None,
        version: str = "1.0.0",
    ) -> Plugin:
        self._validate_definition(code, schema)
        plugin = Plugin(
            author_id=author_id,
            name=name,
            description=description,
            schema=schema,
            code=code,
            version=version,
            status=PluginStatus.PENDING.value,
        )
        self.db.add(plugin)
        await self.db.commit()
        await self.db.refresh(plugin)
        logger.info("Created plugin", extra={"plugin_id": plugin.id, "author_id": author_id})
        return plugin

    async def update_plugin(self, plugin_id: str, author_id: str, changes: dict[str, Any]) -> Plugin:
        """Apply *changes*; an approved plugin whose code or schema changed returns to pending."""
        plugin = await self.get_plugin(plugin_id)
        if plugin.author_id != author_id:
            raise AuthorizationError(details={"plugin_id": plugin_id})
        self._validate_definition(changes.get("code"), changes.get("schema"))

        needs_review = False
        for field in _EDITABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if field in _REVIEWED_FIELDS and value != getattr(plugin, field):
                needs_review = True
            setattr(plugin, field, value)

        if needs_review and plugin.status == PluginStatus.APPROVED.value:
            plugin.status = PluginStatus.PENDING.value
            logger.info("Plugin returned to review after edit", extra={"plugin_id": plugin_id})

        await self.db.commit()
        await self.db.refresh(plugin)
        return plugin

    async def set_status(self, plugin_id: str, status: PluginStatus) -> Plugin:
        plugin = await self.get_plugin(plugin_id)
        plugin.status = PluginStatus(status).value
        await self.db.commit()
        await self.db.refresh(plugin)
        logger.info("Plugin status changed", extra={"plugin_id": plugin_id, "status": plugin.status})
        return plugin

    async def subscribe(self, plugin_id: str, user_id: str) -> PluginSubscription:
        """Activate the user's subscription, creating it if needed."""
        plugin = await self.get_plugin(plugin_id)
        if not plugin.is_approved:
            raise ConflictError(
                "Only approved plugins can be subscribed to",
                details={"plugin_id": plugin_id, "status": plugin.status},
            )
        result = await self.db.execute(
            select(PluginSubscription).where(
                PluginSubscription.user_id == user_id, PluginSubscription.plugin_id == plugin_id
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            subscription = PluginSubscription(user_id=user_id, plugin_id=plugin_id, is_active=True)
            self.db.add(subscription)
        else:
            subscription.is_active = True
        await self.db.commit()
        await self.db.refresh(subscription)
        return subscription

    async def unsubscribe(self, plugin_id: str, user_id: str) -> None:
        result = await self.db.execute(
            select(PluginSubscription).where(
                PluginSubscription.user_id == user_id, PluginSubscription.plugin_id == plugin_id
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is not None:
            await self.db.delete(subscription)
            await self.db.commit()
