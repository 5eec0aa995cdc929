"""
Run a compiled generator for one customer and return structured output.
"""
from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Dict, Optional

from app.config import settings
from app.services.artifacts import ArtifactStore
from app.services.exceptions import NoContext, NotFound
from app.services.generator_contract import GeneratorOutput, Toolkit, builder_for, normalize_output
from app.services.metadata_store import MetadataStore
from app.services.sandbox import CodeSandbox

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class GenerationResult:
    template_slug: str
    customer_id: int
    output_format: str
    used_context: str
    output: GeneratorOutput
    duration_seconds: float
    query_count: int = 0


class GenerationService:
    """Loads the artifact, binds the toolkit to the customer workspace and runs the sandbox."""

    def __init__(
        self,
        store: MetadataStore,
        artifacts: ArtifactStore,
        assistant: Any,
        sandbox: Optional[CodeSandbox] = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.assistant = assistant
        self.sandbox = sandbox or CodeSandbox()

    async def generate(
        self,
        slug: str,
        customer_id: int,
        params: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found")
        workspace = customer.workspace_slug or settings.COMPILER_WORKSPACE_SLUG
        if not workspace:
            raise NoContext(f"Customer {customer_id} has no assistant workspace")

        source = await self.artifacts.read_artifact(slug, workspace)
        if source is None:
            raise NotFound(f"Template '{slug}' has not been compiled yet")

        meta = await self.store.get_template(slug)
        output_format = self._output_format(slug, meta.output_format if meta else None)
        builder = builder_for(output_format)
        toolkit = Toolkit(self.assistant, workspace)

        context = {"customer_id": customer.id, "customer_name": customer.name}
        context.update(params or {})

        logger.info("Generating %s for customer %s (workspace %s)", slug, customer_id, workspace)
        t0 = time.monotonic()
        raw = await self.sandbox.run(source, toolkit, builder, context)
        output = normalize_output(raw, builder)
        duration = round(time.monotonic() - t0, 2)

        if meta is not None:
            await self.store.record_generation(slug, duration)
        logger.info(
            "Generated %s in %.2fs with %d toolkit quer%s",
            slug, duration, toolkit.call_count, "y" if toolkit.call_count == 1 else "ies",
        )
        return GenerationResult(
            template_slug=slug,
            customer_id=customer_id,
            output_format=builder.output_format,
            used_context=workspace,
            output=output,
            duration_seconds=duration,
            query_count=toolkit.call_count,
        )

    def _output_format(self, slug: str, declared: Optional[str]) -> str:
        if declared:
            return declared
        source = self.artifacts.find_source(slug)
        return source.suffix.lstrip(".") if source is not None else "docx"
