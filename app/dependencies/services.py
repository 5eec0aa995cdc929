"""
Service providers for FastAPI ``Depends``.

Stateful collaborators (metadata store locks, assistant semaphore, job
registry) are process-wide singletons; the services built on top of them
are cheap and created per request.  Tests swap any of these through
``app.dependency_overrides``.
"""
from __future__ import annotations

from fastapi import Depends

from app.config import settings
from app.database import AsyncSessionLocal
from app.services.artifacts import ArtifactStore
from app.services.assistant_client import AssistantClient
from app.services.compiler import TemplateCompiler
from app.services.document_analyzer import DocumentAnalyzer
from app.services.generation import GenerationService
from app.services.job_manager import JobManager, job_manager
from app.services.matching import MatchingService
from app.services.metadata_store import MetadataStore, SQLMetadataStore
from app.services.relevance import RelevanceScorer
from app.services.template_analyzer import TemplateAnalyzer

_metadata_store = SQLMetadataStore(AsyncSessionLocal)
_assistant = AssistantClient()


def get_metadata_store() -> MetadataStore:
    return _metadata_store


def get_assistant() -> AssistantClient:
    return _assistant


def get_job_manager() -> JobManager:
    return job_manager


def get_artifact_store() -> ArtifactStore:
    return ArtifactStore(settings.TEMPLATES_DIR)


def get_scorer(assistant=Depends(get_assistant)) -> RelevanceScorer:
    return RelevanceScorer(assistant)


def get_matching_service(
    store: MetadataStore = Depends(get_metadata_store),
    scorer: RelevanceScorer = Depends(get_scorer),
    manager: JobManager = Depends(get_job_manager),
) -> MatchingService:
    return MatchingService(store, scorer, manager)


def get_compiler(
    store: MetadataStore = Depends(get_metadata_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
    assistant=Depends(get_assistant),
    manager: JobManager = Depends(get_job_manager),
) -> TemplateCompiler:
    return TemplateCompiler(store, artifacts, assistant, manager)


def get_generation_service(
    store: MetadataStore = Depends(get_metadata_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
    assistant=Depends(get_assistant),
) -> GenerationService:
    return GenerationService(store, artifacts, assistant)


def get_analyzer(
    store: MetadataStore = Depends(get_metadata_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
    assistant=Depends(get_assistant),
) -> TemplateAnalyzer:
    return TemplateAnalyzer(store, artifacts, assistant)


def get_document_analyzer(
    store: MetadataStore = Depends(get_metadata_store),
    scorer: RelevanceScorer = Depends(get_scorer),
    assistant=Depends(get_assistant),
) -> DocumentAnalyzer:
    return DocumentAnalyzer(store, scorer, assistant)
