"""Knowledge Base API endpoints.

Knowledge base lifecycle, file uploads into the ingestion queue, file
status, re-ingestion and similarity search.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile

from ..core.config import get_settings_instance
from ..core.logging import get_logger
from ..core.response import PersonaResponse
from ..schemas.knowledge_base import (
    KnowledgeBaseCreate,
    KnowledgeBaseResponse,
    KnowledgeFileResponse,
    SearchRequest,
    SearchResponse,
    SearchResult,
)
from ..services.knowledge_base_service import KnowledgeBaseService
from ..services.retrieval_service import RetrievalService
from .dependencies import get_current_profile_id, get_knowledge_base_service, get_retrieval_service

logger = get_logger(__name__)
router = APIRouter(prefix="/knowledge-bases", tags=["knowledge-bases"])

settings = get_settings_instance()


@router.get("", summary="List knowledge bases", description="List the caller's knowledge bases.")
async def list_knowledge_bases(
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    knowledge_bases = await service.list_knowledge_bases(profile_id)
    return PersonaResponse.success([KnowledgeBaseResponse.model_validate(kb) for kb in knowledge_bases])


@router.post("", summary="Create knowledge base")
async def create_knowledge_base(
    body: KnowledgeBaseCreate,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    knowledge_base = await service.create_knowledge_base(
        profile_id, body.name, description=body.description, visibility=body.visibility.value
    )
    return PersonaResponse.created(KnowledgeBaseResponse.model_validate(knowledge_base))


@router.post(
    "/search",
    summary="Search knowledge bases",
    description="Rank chunks from the given knowledge bases by similarity to the query.",
)
async def search_knowledge_bases(
    body: SearchRequest,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
    retrieval: RetrievalService = Depends(get_retrieval_service),
):
    knowledge_base_ids = await service.readable_knowledge_base_ids(body.knowledge_base_ids, profile_id)
    threshold = body.threshold if body.threshold is not None else settings.rag_search_threshold_default
    limit = body.limit if body.limit is not None else settings.rag_max_results_default

    chunks = await retrieval.search(body.query, knowledge_base_ids, threshold=threshold, limit=limit)
    results = [SearchResult(**chunk.to_dict()) for chunk in chunks]
    logger.info(
        "Knowledge search completed",
        extra={"knowledge_base_count": len(knowledge_base_ids), "result_count": len(results)},
    )
    return PersonaResponse.success(SearchResponse(query=body.query, results=results, total=len(results)))


@router.delete("/{kb_id}", summary="Delete knowledge base")
async def delete_knowledge_base(
    kb_id: str,
    background_tasks: BackgroundTasks,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    """Delete a knowledge base with its files and chunks; stored blobs are removed after the response."""
    await service.delete_knowledge_base(kb_id, profile_id)
    background_tasks.add_task(service.cleanup_storage, kb_id)
    return PersonaResponse.no_content()


@router.post(
    "/{kb_id}/files",
    summary="Upload a file",
    description="Store an uploaded file and queue it for ingestion. The file starts as pending.",
)
async def upload_file(
    kb_id: str,
    file: UploadFile = File(..., description="File to ingest"),
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    data = await file.read()
    knowledge_file = await service.upload_file(
        kb_id, profile_id, file.filename or "upload", data, mime_type=file.content_type
    )
    return PersonaResponse.created(KnowledgeFileResponse.model_validate(knowledge_file))


@router.get("/{kb_id}/files", summary="List files")
async def list_files(
    kb_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    files = await service.list_files(kb_id, profile_id)
    return PersonaResponse.success([KnowledgeFileResponse.model_validate(f) for f in files])


@router.get("/{kb_id}/files/{file_id}", summary="Get file status")
async def get_file(
    kb_id: str,
    file_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    knowledge_file = await service.get_file(kb_id, file_id, profile_id)
    return PersonaResponse.success(KnowledgeFileResponse.model_validate(knowledge_file))


@router.post(
    "/{kb_id}/files/{file_id}/reingest",
    summary="Re-ingest a failed file",
    description="Move a failed file back to pending so a worker processes it again.",
)
async def reingest_file(
    kb_id: str,
    file_id: str,
    profile_id: str = Depends(get_current_profile_id),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    knowledge_file = await service.reingest_file(kb_id, file_id, profile_id)
    return PersonaResponse.success(KnowledgeFileResponse.model_validate(knowledge_file))
