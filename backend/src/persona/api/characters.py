"""Character knowledge links: which knowledge bases a character draws on."""

from fastapi import APIRouter, Depends

from ..core.response import PersonaResponse
from ..schemas.knowledge_base import KnowledgeLinkRequest
from ..services.knowledge_base_service import KnowledgeBaseService
from .dependencies import get_current_profile_id, get_knowledge_base_service

router = APIRouter(prefix="/characters", tags=["characters"])


@router.post("/{character_id}/knowledge-bases", summary="Link a knowledge base")
async def link_knowledge_base(
    character_id: str,
    body: KnowledgeLinkRequest,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    subscription = await service.link_to_character(
        character_id, body.knowledge_base_id, profile_id, priority=body.priority
    )
    return PersonaResponse.created(
        {
            "character_id": subscription.character_id,
            "knowledge_base_id": subscription.knowledge_base_id,
            "priority": subscription.priority,
        }
    )


@router.delete("/{character_id}/knowledge-bases/{kb_id}", summary="Unlink a knowledge base")
async def unlink_knowledge_base(
    character_id: str,
    kb_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    await service.unlink_from_character(character_id, kb_id, profile_id)
    return PersonaResponse.no_content()
