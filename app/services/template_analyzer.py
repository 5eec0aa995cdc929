"""
Template metadata analysis.

Asks the assistant what a template is for and what data it needs, then
stores the answer as ``TemplateMetadata``.  The structural skeleton is sent
alongside so the assistant reasons about real headers and sections rather
than guessing from the file name.

An unusable reply produces *fallback* metadata (slug, name, output format
only).  ``analyze`` retries up to ``METADATA_RETRY_ATTEMPTS`` times while
the result is still the fallback.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.config import settings
from app.models.schemas import TemplateMetadata
from app.services.artifacts import ArtifactStore
from app.services.exceptions import DocForgeError, NoContext, NotFound
from app.services.metadata_store import MetadataStore
from app.services.skeleton import TemplateSkeleton, extract_skeleton
from app.utils.helpers import as_str_list, snake_keys, utcnow
from app.utils.parsing import Parsed
from app.utils.retry import retry_until

logger = logging.getLogger(__name__)

DATA_TYPE_TAXONOMY = (
    "Financial, Inventory, Sales, Customer, Timeline, Operational, Personnel, Project, "
    "Product, Order, Asset, Technical, Marketing, HR, Compliance, Quality, Manufacturing, "
    "Supply Chain"
)

_LIST_FIELDS = (
    "required_data_types",
    "expected_entities",
    "data_structure_needs",
    "compatible_document_types",
    "has_sections",
    "use_cases",
)

# Kept from the previous record on re-analysis
_PRESERVED_FIELDS = (
    "generation_count",
    "actual_generation_times",
    "avg_generation_time",
    "last_generated_at",
)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_PROMPT_HEADER = """\
You are an expert document automation specialist analyzing a TEMPLATE file.

This is a TEMPLATE, not a data document. Work out:
1. WHAT this template is designed to generate
2. WHAT DATA INPUTS it needs (data types, entities, structure)
3. HOW it is organized (sections, tables, charts, formulas)
4. WHAT PROCESSING is needed (aggregation, filtering, comparisons, time series)
5. WHO will read the output

IGNORE sample values in the template. Focus on structure and data requirements.
"""

_SPREADSHEET_FOCUS = """\
This is a SPREADSHEET TEMPLATE. Examples:
- product columns, quantity, cost and SUM formulas -> requiredDataTypes ["Inventory", "Financial", "Product"], requiresAggregation true
- monthly columns and line charts -> requiredDataTypes ["Timeline", "Financial"], requiresTimeSeries true
"""

_DOCUMENT_FOCUS = """\
This is a WORD DOCUMENT TEMPLATE. Examples:
- "Customer Name", "Order #" and a product table -> requiredDataTypes ["Customer", "Sales", "Order", "Product"]
- monthly progress sections -> requiredDataTypes ["Timeline", "Project"], requiresTimeSeries true
"""

_JSON_SHAPE = """\
Return ONLY this JSON object:

{{
  "templateType": "Report | Dashboard | Invoice | Letter | Proposal | Tracker | Form | Summary",
  "purpose": "1-2 sentences: what this template generates and why",
  "outputFormat": "{output_format}",
  "requiredDataTypes": ["USE ONLY: {taxonomy}"],
  "expectedEntities": ["Products, Customers, Orders, Employees, Projects, Systems, ..."],
  "dataStructureNeeds": ["Tabular data", "Time series", "Narrative text", "Key-value pairs", ...],
  "hasSections": ["section or sheet names"],
  "hasCharts": true/false,
  "hasTables": true/false,
  "hasFormulas": true/false,
  "tableCount": number,
  "requiresAggregation": true/false,
  "requiresTimeSeries": true/false,
  "requiresComparisons": true/false,
  "requiresFiltering": true/false,
  "complexity": "Simple | Moderate | Complex",
  "targetAudience": "Executives | Customers | Technical Teams | Internal Staff | Finance Team",
  "useCases": ["Monthly reporting", ...],
  "compatibleDocumentTypes": ["document types that would supply this data"]
}}

List 3-5 items in each array.  Set boolean flags to true ONLY when clearly needed.
Return ONLY valid JSON: no markdown, no explanation.\
"""


def build_analysis_prompt(skeleton: TemplateSkeleton) -> str:
    parts = [_PROMPT_HEADER]
    if skeleton.output_format == "xlsx":
        parts.append(_SPREADSHEET_FOCUS)
    elif skeleton.source_format == "docx":
        parts.append(_DOCUMENT_FOCUS)
    parts.append("TEMPLATE STRUCTURE:\n" + skeleton.render())
    parts.append(_JSON_SHAPE.format(output_format=skeleton.output_format, taxonomy=DATA_TYPE_TAXONOMY))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Result handling
# ---------------------------------------------------------------------------

def fallback_metadata(slug: str, name: str, output_format: str, workspace_slug: Optional[str]) -> TemplateMetadata:
    return TemplateMetadata(
        template_slug=slug,
        template_name=name,
        output_format=output_format,
        workspace_slug=workspace_slug,
        last_analyzed=utcnow(),
    )


def is_fallback(meta: TemplateMetadata) -> bool:
    return not (meta.template_type or meta.purpose or meta.required_data_types)


def metadata_from_reply(
    value: Any,
    slug: str,
    name: str,
    output_format: str,
    workspace_slug: Optional[str],
) -> TemplateMetadata:
    """Coerce an assistant JSON reply into TemplateMetadata; fallback if unusable."""
    if isinstance(value, list) and value and isinstance(value[0], dict):
        value = value[0]
    if not isinstance(value, dict):
        return fallback_metadata(slug, name, output_format, workspace_slug)

    data: Dict[str, Any] = snake_keys(value)
    for field in _LIST_FIELDS:
        if field in data:
            data[field] = as_str_list(data[field])
    data.update(
        template_slug=slug,
        template_name=name,
        workspace_slug=workspace_slug,
        last_analyzed=utcnow(),
    )
    data.setdefault("output_format", output_format)
    try:
        return TemplateMetadata.model_validate(data)
    except ValidationError as exc:
        logger.warning("Template analysis reply for %s failed validation: %s", slug, exc.error_count())
        return fallback_metadata(slug, name, output_format, workspace_slug)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class TemplateAnalyzer:
    """Refreshes TemplateMetadata for one template."""

    def __init__(
        self,
        store: MetadataStore,
        artifacts: ArtifactStore,
        assistant: Any,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.artifacts = artifacts
        self.assistant = assistant
        self.attempts = attempts if attempts is not None else settings.METADATA_RETRY_ATTEMPTS
        self.delay = delay if delay is not None else settings.METADATA_RETRY_DELAY

    async def analyze(
        self,
        slug: str,
        workspace_slug: Optional[str] = None,
        name: Optional[str] = None,
    ) -> TemplateMetadata:
        source = self.artifacts.find_source(slug)
        if source is None:
            raise NotFound(f"Template '{slug}' has no source file to analyze")

        existing = await self.store.get_template(slug)
        workspace = (
            workspace_slug
            or (existing.workspace_slug if existing else None)
            or settings.COMPILER_WORKSPACE_SLUG
        )
        if not workspace:
            raise NoContext(f"No assistant workspace available to analyze template '{slug}'")
        name = name or (existing.template_name if existing and existing.template_name else slug)

        skeleton = await extract_skeleton(source)
        prompt = build_analysis_prompt(skeleton)
        logger.info("Analyzing template %s in workspace %s (%d chars)", slug, workspace, len(prompt))

        async def _attempt() -> TemplateMetadata:
            try:
                result = await self.assistant.query_json(workspace, prompt)
            except DocForgeError as exc:
                logger.warning("Template analysis call for %s failed: %s", slug, exc)
                return fallback_metadata(slug, name, skeleton.output_format, workspace)
            value = result.value if isinstance(result, Parsed) else None
            return metadata_from_reply(value, slug, name, skeleton.output_format, workspace)

        meta = await retry_until(
            _attempt,
            lambda m: not is_fallback(m),
            attempts=self.attempts,
            delay=self.delay,
            label=f"template analysis {slug}",
        )

        if existing is not None:
            for field in _PRESERVED_FIELDS:
                setattr(meta, field, getattr(existing, field))
            meta.analysis_version = existing.analysis_version + 1
        if not meta.table_count and skeleton.tables:
            meta.table_count = len(skeleton.tables)
            meta.has_tables = True
        if skeleton.sheets and any(s.has_formulas for s in skeleton.sheets):
            meta.has_formulas = True
        if not meta.has_sections:
            meta.has_sections = self.section_names(skeleton)[:20]

        saved = await self.store.put_template(meta)
        logger.info(
            "Template %s analyzed%s", slug, " (fallback metadata)" if is_fallback(saved) else ""
        )
        return saved

    @staticmethod
    def section_names(skeleton: TemplateSkeleton) -> List[str]:
        if skeleton.sheets:
            return [s.name for s in skeleton.sheets]
        return [b.text for b in skeleton.blocks if b.kind == "heading"]
