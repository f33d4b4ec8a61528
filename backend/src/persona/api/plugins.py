"""Plugins API: catalogue, authoring and subscriptions."""

from fastapi import APIRouter, Depends, Query

from ..core.logging import get_logger
from ..core.response import PersonaResponse
from ..schemas.plugin import PluginCreate, PluginResponse, PluginUpdate
from ..services.plugin_service import PluginService
from .dependencies import get_current_profile_id, get_plugin_service

logger = get_logger(__name__)
router = APIRouter(prefix="/plugins", tags=["plugins"])


@router.get("", summary="List plugins", description="Approved plugins, or all of one author's plugins.")
async def list_plugins(
    status: str | None = Query(None, description="Filter by review status"),
    author_id: str | None = Query(None, alias="authorId", description="Filter by author"),
    service: PluginService = Depends(get_plugin_service),
):
    plugins = await service.list_plugins(status=status, author_id=author_id)
    return PersonaResponse.success([PluginResponse.model_validate(p) for p in plugins])


@router.post("", summary="Submit a plugin")
async def create_plugin(
    body: PluginCreate,
    profile_id: str = Depends(get_current_profile_id),
    service: PluginService = Depends(get_plugin_service),
):
    plugin = await service.create_plugin(
        profile_id,
        body.name,
        body.code,
        description=body.description,
        schema=body.schema_,
        version=body.version,
    )
    return PersonaResponse.created(PluginResponse.model_validate(plugin))


@router.get("/{plugin_id}", summary="Get a plugin")
async def get_plugin(plugin_id: str, service: PluginService = Depends(get_plugin_service)):
    plugin = await service.get_plugin(plugin_id)
    return PersonaResponse.success(PluginResponse.model_validate(plugin))


@router.patch("/{plugin_id}", summary="Edit a plugin", description="Code or schema edits send an approved plugin back to review.")
async def update_plugin(
    plugin_id: str,
    body: PluginUpdate,
    profile_id: str = Depends(get_current_profile_id),
    service: PluginService = Depends(get_plugin_service),
):
    plugin = await service.update_plugin(plugin_id, profile_id, body.changes())
    return PersonaResponse.success(PluginResponse.model_validate(plugin))


@router.post("/{plugin_id}/subscribe", summary="Subscribe to a plugin")
async def subscribe(
    plugin_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: PluginService = Depends(get_plugin_service),
):
    await service.subscribe(plugin_id, profile_id)
    return PersonaResponse.success(None)


@router.delete("/{plugin_id}/subscribe", summary="Unsubscribe from a plugin")
async def unsubscribe(
    plugin_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: PluginService = Depends(get_plugin_service),
):
    await service.unsubscribe(plugin_id, profile_id)
    return PersonaResponse.no_content()
