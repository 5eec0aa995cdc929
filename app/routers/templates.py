"""
Template upload, compile and analysis endpoints.

Route summary
-------------
POST /{slug}/upload          — store a .docx / .xlsx / text template file.
POST /{slug}/compile         — compile synchronously; returns the artifact ref.
POST /{slug}/compile/stream  — compile in the background, streaming progress events (SSE).
GET  /jobs/{job_id}/events   — follow the progress events of any running job.
POST /{slug}/analyze         — (re)build the template's metadata record.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse

from app.config import settings
from app.dependencies.auth import get_optional_user_id
from app.dependencies.services import (
    get_analyzer,
    get_artifact_store,
    get_compiler,
    get_job_manager,
)
from app.models.schemas import (
    AnalyzeRequest,
    CompileRequest,
    CompileResponse,
    TemplateMetadata,
    TemplateUploadResponse,
)
from app.services.artifacts import ArtifactStore, validate_slug
from app.services.compiler import TemplateCompiler
from app.services.job_manager import JobCancelled, JobKind, JobManager
from app.services.progress import ProgressChannel, format_sse, info_event, progress_broker
from app.services.skeleton import SUPPORTED_EXTENSIONS
from app.services.template_analyzer import TemplateAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _event_stream(channel: ProgressChannel, queue, first_event: Optional[dict] = None) -> StreamingResponse:
    async def _stream() -> AsyncIterator[str]:
        try:
            if first_event is not None:
                yield format_sse(first_event)
            async for event in ProgressChannel.iterate(queue):
                yield format_sse(event)
        finally:
            channel.unsubscribe(queue)

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

@router.post(
    "/{slug}/upload",
    response_model=TemplateUploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a template file",
)
async def upload_template(
    slug: str,
    file: UploadFile = File(...),
    artifacts: ArtifactStore = Depends(get_artifact_store),
) -> TemplateUploadResponse:
    """
    Store the template source for *slug*, replacing any previous file.

    Existing generators are kept; compile again to pick up the new layout.
    """
    validate_slug(slug)
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upload must include a filename.",
        )

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Unsupported file type '{file_ext}'. "
                f"Accepted: {', '.join(SUPPORTED_EXTENSIONS)}"
            ),
        )

    data = await file.read(settings.MAX_TEMPLATE_SIZE + 1)
    if len(data) > settings.MAX_TEMPLATE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.MAX_TEMPLATE_SIZE // (1024 * 1024)} MB size limit.",
        )
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty.",
        )

    path = await artifacts.save_source(slug, file_ext, data)
    logger.info("Uploaded template %r for %s (%d bytes)", file.filename, slug, len(data))

    return TemplateUploadResponse(
        slug=slug,
        filename=path.name,
        file_size=len(data),
        output_format="xlsx" if file_ext == ".xlsx" else "docx",
        has_generator=artifacts.has_artifact(slug),
    )


# ---------------------------------------------------------------------------
# Compile
# ---------------------------------------------------------------------------

@router.post(
    "/{slug}/compile",
    response_model=CompileResponse,
    summary="Compile a template into a generator",
)
async def compile_template(
    slug: str,
    body: Optional[CompileRequest] = None,
    compiler: TemplateCompiler = Depends(get_compiler),
    manager: JobManager = Depends(get_job_manager),
    user_id: Optional[str] = Depends(get_optional_user_id),
) -> CompileResponse:
    """
    Run the full compile pipeline and wait for it.

    Errors map to: 404 unknown template or missing file, 400 no assistant
    workspace, 502 the assistant returned no usable code, 503 assistant
    unreachable.  The compile is also recorded as a job.
    """
    request = body or CompileRequest()
    validate_slug(slug)
    job_id = await manager.create_job(JobKind.COMPILE, template_slugs=[slug], created_by=user_id)
    try:
        result = await manager.run_inline(job_id, compiler.worker(slug, request))
    except JobCancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Compilation job {job_id} was cancelled.",
        )

    return CompileResponse(
        slug=slug,
        job_id=job_id,
        artifact_ref=result["artifact_ref"],
        used_context=result["used_context"],
        revised=result["revised"],
        message="Template revised successfully" if result["revised"] else "Template compiled successfully",
    )


@router.post("/{slug}/compile/stream", summary="Compile with streamed progress (SSE)")
async def compile_template_stream(
    slug: str,
    body: Optional[CompileRequest] = None,
    compiler: TemplateCompiler = Depends(get_compiler),
    manager: JobManager = Depends(get_job_manager),
    user_id: Optional[str] = Depends(get_optional_user_id),
) -> StreamingResponse:
    """
    Start a compile job and stream its events as ``text/event-stream``.

    The first event is ``info`` with the ``job_id``; the stream ends after
    ``done`` or ``error``.  Disconnecting does not stop the compile.
    """
    request = body or CompileRequest()
    validate_slug(slug)
    job_id = await manager.create_job(JobKind.COMPILE, template_slugs=[slug], created_by=user_id)

    # Subscribe before the worker can publish anything
    channel = progress_broker.open(job_id)
    queue = channel.subscribe()
    manager.start_in_background(job_id, compiler.worker(slug, request))

    return _event_stream(channel, queue, info_event(job_id=job_id, slug=slug))


@router.get("/jobs/{job_id}/events", summary="Follow a job's progress events (SSE)")
async def job_events(job_id: str, manager: JobManager = Depends(get_job_manager)) -> StreamingResponse:
    """
    Stream events for a pending or running job from now on.  Missed events
    are not replayed; for a finished job the stream carries one ``info``
    event with the final status.
    """
    job = await manager.get_status(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found.",
        )

    channel = progress_broker.open(job_id)
    queue = channel.subscribe()

    # The job may have finished between the lookup and the subscription
    job = await manager.get_status(job_id)
    if job is None or job.is_terminal:
        progress_broker.close(job_id)

    return _event_stream(
        channel,
        queue,
        info_event(job_id=job_id, status=job.status.value if job else "unknown"),
    )


# ---------------------------------------------------------------------------
# Analyze
# ---------------------------------------------------------------------------

@router.post(
    "/{slug}/analyze",
    response_model=TemplateMetadata,
    summary="Analyze a template's purpose and data requirements",
)
async def analyze_template(
    slug: str,
    body: Optional[AnalyzeRequest] = None,
    analyzer: TemplateAnalyzer = Depends(get_analyzer),
) -> TemplateMetadata:
    """
    Ask the assistant to describe the template and store the result.
    Retries while the reply is unusable; generation statistics survive
    re-analysis.
    """
    request = body or AnalyzeRequest()
    validate_slug(slug)
    return await analyzer.analyze(slug, workspace_slug=request.workspace_slug, name=request.template_name)
