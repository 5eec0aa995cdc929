"""
Template compilation: template file in, generator source out.

Pipeline stages (each reported as a ``step`` start/ok event)::

    resolve_template → resolve_context → read_artifact → extract_skeleton
      → build_metadata_context → build_prompt → invoke_assistant → parse_and_write

Only ``invoke_assistant`` talks to the network, and it is called exactly
once; retrying a failed compile is the caller's decision.  The artifact is
written only after the reply has been parsed and validated, so a failed
compile never replaces a working generator.

Public API
----------
TemplateCompiler.compile(slug, request, job_id)   -> CompileResult
TemplateCompiler.worker(slug, request)            -> JobWorker for JobKind.COMPILE
"""
from __future__ import annotations

import dataclasses
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.config import settings
from app.models.schemas import CompileRequest, DocumentMetadata, TemplateMetadata
from app.services.artifacts import ArtifactStore
from app.services.exceptions import EmptyGeneration, GenerationFailed, NoContext, NotFound
from app.services.job_manager import CancellationToken, Job, JobCancelled, JobManager, JobWorker
from app.services.metadata_store import MetadataStore
from app.services.progress import done_event, error_event, progress_broker
from app.services.relevance import build_metadata_context
from app.services.sandbox import ALLOWED_IMPORTS, CodeSandbox
from app.services.skeleton import TemplateSkeleton, extract_skeleton
from app.utils.parsing import extract_code

logger = logging.getLogger(__name__)

# (stage name, progress percent once the stage is done)
STAGES = (
    ("resolve_template", 5),
    ("resolve_context", 10),
    ("read_artifact", 20),
    ("extract_skeleton", 35),
    ("build_metadata_context", 45),
    ("build_prompt", 55),
    ("invoke_assistant", 85),
    ("parse_and_write", 100),
)
_STAGE_PERCENT = dict(STAGES)
_STAGE_START = {name: (STAGES[i - 1][1] if i else 0) for i, (name, _) in enumerate(STAGES)}


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_GENERATOR_CONTRACT = """\
=== GENERATOR CONTRACT ===
Write ONE Python module that defines:

    async def generate(toolkit, builder, context):

- toolkit.query_structured(prompt) -> parsed JSON (list/dict) from the customer's documents
- toolkit.query_text(prompt)       -> free text from the customer's documents
- context                          -> dict of caller parameters (customer, date range, ...)
{builder_contract}
Rules:
- Fetch every data value at run time through the toolkit.  NEVER copy names, \
numbers or dates from the SAMPLE rows in the skeleton; they are placeholders.
- Preserve the skeleton's structure: headings, section order, table columns.
- Only these imports are allowed: {allowed_imports}.
- No file, network or OS access.  No names or attributes starting with "_".
- Handle empty query results gracefully (write "No data available" rather than failing).
- Return None when you have filled the builder.

Respond with the complete module in a single ```python code block and nothing else.\
"""

_DOCUMENT_BUILDER_CONTRACT = """\
- builder (document): add_heading(text, level), add_paragraph(text, style=None, runs=None), \
add_bullet_list(items), add_numbered_list(items), add_table(rows, header=True), page_break()
"""

_SPREADSHEET_BUILDER_CONTRACT = """\
- builder (spreadsheet): set_cell(sheet, ref, value, num_fmt=None, bold=False, ...), \
set_range(sheet, start_ref, rows), insert_rows(sheet, at, count, copy_style_from_row=None)
- Keep the existing header rows; write data below them, inserting rows that copy \
the style of the first sample row.
"""


@dataclasses.dataclass
class CompileResult:
    slug: str
    artifact_ref: str
    used_context: str
    revised: bool
    duration_seconds: float


@dataclasses.dataclass
class _CompileState:
    """Values threaded between stages."""

    slug: str
    request: CompileRequest
    metadata: Optional[TemplateMetadata] = None
    context: str = ""
    source_path: Optional[Path] = None
    existing_artifact: Optional[str] = None
    skeleton: Optional[TemplateSkeleton] = None
    metadata_context: str = ""
    prompt: str = ""
    reply: str = ""
    artifact_ref: str = ""


class TemplateCompiler:
    """Turns a stored template into generator source via the assistant."""

    GENERATOR_CONTRACT = _GENERATOR_CONTRACT

    def __init__(
        self,
        store: MetadataStore,
        artifacts: ArtifactStore,
        assistant: Any,
        manager: JobManager,
        default_workspace: Optional[str] = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.assistant = assistant
        self.manager = manager
        self.default_workspace = (
            settings.COMPILER_WORKSPACE_SLUG if default_workspace is None else default_workspace
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def worker(self, slug: str, request: CompileRequest) -> JobWorker:
        """Bind a compile to a job; publishes the terminal done/error event."""

        async def _work(job: Job, token: CancellationToken) -> Dict[str, Any]:
            try:
                result = await self.compile(slug, request, job.id, token)
            except JobCancelled:
                progress_broker.publish(job.id, error_event("Compilation cancelled"))
                raise
            except Exception as exc:
                message = getattr(exc, "message", None) or str(exc)
                progress_broker.publish(job.id, error_event(message))
                raise
            progress_broker.publish(
                job.id, done_event(result.artifact_ref, result.used_context, job.id)
            )
            return {
                "artifact_ref": result.artifact_ref,
                "used_context": result.used_context,
                "revised": result.revised,
            }

        return _work

    async def compile(
        self,
        slug: str,
        request: CompileRequest,
        job_id: str,
        token: Optional[CancellationToken] = None,
    ) -> CompileResult:
        token = token or CancellationToken()
        state = _CompileState(slug=slug, request=request)
        t0 = time.monotonic()

        for name, _ in STAGES:
            token.raise_if_cancelled()
            await self.manager.step_start(job_id, name, _STAGE_START[name])
            await getattr(self, f"_{name}")(state, job_id)
            await self.manager.step_ok(job_id, name, _STAGE_PERCENT[name])

        elapsed = round(time.monotonic() - t0, 2)
        logger.info("Compiled template %s with context %s in %.2fs", slug, state.context, elapsed)
        return CompileResult(
            slug=slug,
            artifact_ref=state.artifact_ref,
            used_context=state.context,
            revised=self._is_revision(state),
            duration_seconds=elapsed,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _resolve_template(self, state: _CompileState, job_id: str) -> None:
        state.metadata = await self.store.get_template(state.slug)
        if state.metadata is None and not self.artifacts.exists(state.slug):
            raise NotFound(f"Template '{state.slug}' not found")
        await self.manager.log(job_id, f"Template '{state.slug}' resolved")

    async def _resolve_context(self, state: _CompileState, job_id: str) -> None:
        candidates: List[Optional[str]] = [state.request.workspace_slug]
        if state.metadata is not None:
            candidates.append(state.metadata.workspace_slug)
        if state.request.customer_id is not None:
            customer = await self.store.get_customer(state.request.customer_id)
            if customer is not None:
                candidates.append(customer.workspace_slug)
        candidates.append(self.default_workspace)

        context = next((c for c in candidates if c), None)
        if not context:
            raise NoContext(
                f"No assistant workspace configured for template '{state.slug}'; "
                "set COMPILER_WORKSPACE_SLUG or pass workspace_slug"
            )
        state.context = context
        await self.manager.log(job_id, f"Using assistant workspace '{context}'")

    async def _read_artifact(self, state: _CompileState, job_id: str) -> None:
        state.source_path = self.artifacts.find_source(state.slug)
        if state.source_path is None:
            raise NotFound(
                f"Template '{state.slug}' has no source file to compile; upload a template file first"
            )
        state.existing_artifact = await self.artifacts.read_artifact(
            state.slug, self._context_key(state)
        )
        await self.manager.log(
            job_id,
            f"Read {state.source_path.name}"
            + (" (existing generator found)" if state.existing_artifact else ""),
        )

    async def _extract_skeleton(self, state: _CompileState, job_id: str) -> None:
        try:
            state.skeleton = await extract_skeleton(state.source_path)
        except Exception as exc:
            logger.error("Skeleton extraction failed for %s: %s", state.source_path, exc)
            raise NotFound(
                f"Could not read template file {state.source_path.name}: {exc}"
            ) from exc
        if state.skeleton.is_empty:
            raise NotFound(f"Template file {state.source_path.name} has no extractable structure")
        await self.manager.log(
            job_id,
            f"Skeleton: {len(state.skeleton.blocks)} block(s), {len(state.skeleton.tables)} table(s), "
            f"{len(state.skeleton.sheets)} sheet(s)",
        )

    async def _build_metadata_context(self, state: _CompileState, job_id: str) -> None:
        # Optional enrichment; any failure leaves the context empty
        if state.metadata is None:
            return
        try:
            documents: List[DocumentMetadata] = []
            if state.request.customer_id is not None:
                documents = await self.store.list_documents([state.request.customer_id])
            state.metadata_context = build_metadata_context(state.metadata, documents)
        except Exception as exc:
            logger.warning("Metadata context failed for %s: %s", state.slug, exc)
            state.metadata_context = ""
            await self.manager.log(job_id, "Metadata context unavailable; continuing without it")

    async def _build_prompt(self, state: _CompileState, job_id: str) -> None:
        skeleton = state.skeleton
        builder_contract = (
            _SPREADSHEET_BUILDER_CONTRACT if skeleton.output_format == "xlsx" else _DOCUMENT_BUILDER_CONTRACT
        )
        contract = self.GENERATOR_CONTRACT.format(
            builder_contract=builder_contract,
            allowed_imports=", ".join(sorted(ALLOWED_IMPORTS)),
        )
        instructions = (state.request.instructions or "").strip()

        parts: List[str] = []
        if self._is_revision(state):
            parts.append(
                "=== REVISION INSTRUCTIONS (HIGHEST PRIORITY) ===\n"
                f"{instructions}\n\n"
                "Apply these instructions while regenerating the whole generator. "
                "Where they conflict with anything below, they win."
            )
            parts.append(
                "=== CURRENT GENERATOR (reference only; rewrite it completely) ===\n"
                f"```python\n{state.existing_artifact}\n```"
            )
        else:
            parts.append(
                "You are a document template compiler. Turn the template skeleton below "
                "into a Python generator that rebuilds the document from live data."
            )
        parts.append(
            "=== TEMPLATE SKELETON (structure to preserve; SAMPLE values to replace) ===\n"
            + skeleton.render()
        )
        if state.metadata_context:
            parts.append(state.metadata_context)
        if instructions and not self._is_revision(state):
            parts.append(f"=== ADDITIONAL INSTRUCTIONS ===\n{instructions}")
        parts.append(contract)

        state.prompt = "\n\n".join(parts)
        await self.manager.log(job_id, f"Prompt built ({len(state.prompt)} chars)")

    async def _invoke_assistant(self, state: _CompileState, job_id: str) -> None:
        await self.manager.log(job_id, f"Sending prompt to workspace '{state.context}'")
        state.reply = await self.assistant.chat(state.context, state.prompt)
        await self.manager.log(job_id, f"Assistant replied ({len(state.reply)} chars)")

    async def _parse_and_write(self, state: _CompileState, job_id: str) -> None:
        code = extract_code(state.reply)
        if not code:
            raise EmptyGeneration(
                f"Assistant reply for '{state.slug}' contained no code", raw_text=state.reply
            )
        try:
            CodeSandbox.validate(code)
        except GenerationFailed as exc:
            raise EmptyGeneration(
                f"Assistant reply for '{state.slug}' contained no usable generator: {exc.message}",
                raw_text=state.reply,
            ) from exc

        state.artifact_ref = await self.artifacts.write_artifact(
            state.slug, code + "\n", self._context_key(state)
        )
        await self.manager.log(job_id, f"Generator written to {state.artifact_ref}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _context_key(state: _CompileState) -> Optional[str]:
        return state.context if state.request.context_specific else None

    @staticmethod
    def _is_revision(state: _CompileState) -> bool:
        return bool(state.existing_artifact and (state.request.instructions or "").strip())
