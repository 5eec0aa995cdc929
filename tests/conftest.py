"""
Shared fixtures for DocForge backend tests.

Everything runs in-process: the metadata store is the in-memory
implementation, the assistant is a scripted fake, templates live under
``tmp_path`` and every test gets a fresh JobManager.  The FastAPI app is
driven through httpx's ASGI transport, which does not run the lifespan, so
no database or assistant server is needed.
"""
from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import settings
from app.dependencies.services import (
    get_analyzer,
    get_artifact_store,
    get_assistant,
    get_document_analyzer,
    get_job_manager,
    get_matching_service,
    get_metadata_store,
)
from app.main import app
from app.services.artifacts import ArtifactStore
from app.services.document_analyzer import DocumentAnalyzer
from app.services.job_manager import JobManager
from app.services.matching import MatchingService
from app.services.metadata_store import InMemoryMetadataStore
from app.services.relevance import RelevanceScorer
from app.services.template_analyzer import TemplateAnalyzer
from tests.fakes import FakeAssistant


# ---------------------------------------------------------------------------
# Per-test fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _no_default_workspace(monkeypatch):
    monkeypatch.setattr(settings, "COMPILER_WORKSPACE_SLUG", "")


@pytest.fixture
def store() -> InMemoryMetadataStore:
    return InMemoryMetadataStore()


@pytest.fixture
def assistant() -> FakeAssistant:
    return FakeAssistant()


@pytest.fixture
def manager() -> JobManager:
    return JobManager()


@pytest.fixture
def templates_root(tmp_path: Path) -> Path:
    root = tmp_path / "templates"
    root.mkdir()
    return root


@pytest.fixture
def artifacts(templates_root: Path) -> ArtifactStore:
    return ArtifactStore(str(templates_root))


@pytest_asyncio.fixture
async def client(
    store: InMemoryMetadataStore,
    assistant: FakeAssistant,
    manager: JobManager,
    artifacts: ArtifactStore,
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with every stateful
    dependency overridden by the per-test fixtures.
    """
    app.dependency_overrides[get_metadata_store] = lambda: store
    app.dependency_overrides[get_assistant] = lambda: assistant
    app.dependency_overrides[get_job_manager] = lambda: manager
    app.dependency_overrides[get_artifact_store] = lambda: artifacts
    app.dependency_overrides[get_matching_service] = lambda: MatchingService(
        store, RelevanceScorer(assistant), manager, batch_delay=0
    )
    app.dependency_overrides[get_analyzer] = lambda: TemplateAnalyzer(
        store, artifacts, assistant, delay=0
    )
    app.dependency_overrides[get_document_analyzer] = lambda: DocumentAnalyzer(
        store, RelevanceScorer(assistant), assistant, delay=0
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

AUTH_HEADERS = {"X-User-Id": "test-user-1"}


def write_source(root: Path, slug: str, content: str, filename: str = "template.md") -> Path:
    directory = root / slug
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(content, encoding="utf-8")
    return path
