"""Application fixtures for API tests; services are replaced with mocks."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from persona.api.dependencies import (
    get_chat_service,
    get_current_profile_id,
    get_knowledge_base_service,
    get_orchestrator_builder,
    get_plugin_service,
    get_retrieval_service,
    get_session_factory,
)
from persona.main import create_app



@pytest.fixture
def chat_service():
    service = MagicMock()
    service.get_member_chat = AsyncMock()
    service.list_user_chats = AsyncMock(return_value=[])
    service.get_or_create_private_chat = AsyncMock()
    service.list_messages = AsyncMock(return_value=([], None))
    return service


@pytest.fixture
def kb_service():
    service = MagicMock()
    for name in (
        "list_knowledge_bases",
        "create_knowledge_base",
        "delete_knowledge_base",
        "cleanup_storage",
        "upload_file",
        "list_files",
        "get_file",
        "reingest_file",
        "readable_knowledge_base_ids",
        "link_to_character",
        "unlink_from_character",
    ):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def retrieval_service():
    service = MagicMock()
    service.search = AsyncMock(return_value=[])
    return service


@pytest.fixture
def plugin_service():
    service = MagicMock()
    for name in ("list_plugins", "create_plugin", "get_plugin", "update_plugin", "subscribe", "unsubscribe"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def orchestrator():
    """Replies are scripted through ``orchestrator.replies``."""
    fake = MagicMock()
    fake.replies = ["Hello"]
    fake.calls = []

    async def stream_message(chat_id, profile_id, content):
        fake.calls.append((chat_id, profile_id, content))
        for text in fake.replies:
            yield text

    fake.stream_message = stream_message
    return fake


@pytest.fixture
def app(chat_service, kb_service, retrieval_service, plugin_service, orchestrator):
    application = create_app()

    @asynccontextmanager
    async def session_factory():
        yield MagicMock()

    application.dependency_overrides[get_chat_service] = lambda: chat_service
    application.dependency_overrides[get_knowledge_base_service] = lambda: kb_service
    application.dependency_overrides[get_retrieval_service] = lambda: retrieval_service
    application.dependency_overrides[get_plugin_service] = lambda: plugin_service
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_orchestrator_builder] = lambda: (lambda session: orchestrator)
    return application


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)
