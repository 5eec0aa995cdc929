"""
Document metadata analysis.

Asks the assistant what an uploaded customer document contains, stores the
answer as ``DocumentMetadata`` and then scores the document against every
known template so it shows up in matching right away.

Spreadsheets are pre-analysed locally: sheet names, headers, row counts and
formula use come from the workbook itself and are merged into
``extra_fields``, so the assistant only has to supply the semantics.

Analysis and scoring fail separately.  No usable analysis after
``METADATA_RETRY_ATTEMPTS`` tries raises ``EmptyGeneration`` and nothing is
saved.  A scoring failure after the record is saved is logged and reported
in ``DocumentAnalysisResponse.scoring_error``.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from app.config import settings
from app.models.schemas import DocumentAnalysisResponse, DocumentMetadata
from app.services.exceptions import DocForgeError, EmptyGeneration, NoContext, NotFound
from app.services.metadata_store import MetadataStore
from app.services.relevance import RelevanceScorer
from app.services.skeleton import TEXT_EXTENSIONS, TemplateSkeleton, extract_skeleton_sync
from app.services.template_analyzer import DATA_TYPE_TAXONOMY
from app.utils.helpers import as_str_list, snake_keys, truncate_text
from app.utils.parsing import Parsed
from app.utils.retry import retry_until

logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = (".xlsx", ".xls", ".csv")
PRESENTATION_EXTENSIONS = (".pptx", ".ppt")
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
CODE_EXTENSIONS = (".py", ".js", ".ts", ".java", ".go", ".sql", ".json", ".yaml", ".yml")

_LIST_FIELDS = ("key_topics", "data_categories", "stakeholders", "mentioned_systems")
_COMMON_FIELDS = frozenset(DocumentMetadata.model_fields)
_TAXONOMY = {name.strip().lower(): name.strip() for name in DATA_TYPE_TAXONOMY.split(",")}


def file_category(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    if ext in SPREADSHEET_EXTENSIONS:
        return "spreadsheet"
    if ext in PRESENTATION_EXTENSIONS:
        return "presentation"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in CODE_EXTENSIONS:
        return "code"
    return "document"


# ---------------------------------------------------------------------------
# Spreadsheet pre-analysis
# ---------------------------------------------------------------------------

@dataclass
class SpreadsheetStructure:
    sheet_names: List[str]
    column_headers: List[str]
    column_count: int
    data_row_count: int
    has_formulas: bool
    skeleton: TemplateSkeleton

    def as_extra_fields(self) -> Dict[str, Any]:
        return {
            "sheet_names": self.sheet_names,
            "column_headers": self.column_headers,
            "column_count": self.column_count,
            "data_row_count": self.data_row_count,
            "has_formulas": self.has_formulas,
        }


def spreadsheet_structure(filename: str, content: bytes) -> Optional[SpreadsheetStructure]:
    """
    Read the workbook structure from uploaded bytes.

    Only ``.xlsx`` is parsed; other spreadsheet formats return None and are
    analysed by the assistant alone.  Runs blocking I/O, call it off the loop.
    """
    if Path(filename).suffix.lower() != ".xlsx":
        return None
    with tempfile.TemporaryDirectory(prefix="docforge-") as tmp:
        path = Path(tmp) / Path(filename).name
        path.write_bytes(content)
        skeleton = extract_skeleton_sync(path)

    headers: List[str] = []
    for sheet in skeleton.sheets:
        headers.extend(h for h in sheet.header if h and h not in headers)
    return SpreadsheetStructure(
        sheet_names=[s.name for s in skeleton.sheets],
        column_headers=headers,
        column_count=max((s.max_column for s in skeleton.sheets), default=0),
        data_row_count=sum(max(s.max_row - s.header_row, 0) for s in skeleton.sheets if s.header),
        has_formulas=any(s.has_formulas for s in skeleton.sheets),
        skeleton=skeleton,
    )


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_PROMPT_HEADER = """\
You are analyzing the customer document "{filename}" stored in this workspace.
Describe what the document contains so it can be matched to report templates.
"""

_FOCUS = {
    "spreadsheet": (
        "This is a SPREADSHEET. Work out what the rows represent, which columns hold "
        "metrics, and whether the data is a time series or a snapshot."
    ),
    "presentation": (
        "This is a PRESENTATION. Work out the audience, the key messages and any "
        "figures quoted on the slides."
    ),
    "image": (
        "This is an IMAGE. Describe charts, diagrams or tables it shows and the "
        "data they convey."
    ),
    "code": (
        "This is a CODE or configuration file. Work out which systems it belongs to "
        "and what data it reads or produces."
    ),
    "document": (
        "This is a TEXT DOCUMENT. Work out its purpose, the people and systems it "
        "mentions, and any dates or periods it covers."
    ),
}

_JSON_SHAPE = """\
Return ONLY this JSON object:

{{
  "documentType": "Report | Spreadsheet | Meeting Notes | Contract | Invoice | Presentation | Email | Specification | ...",
  "purpose": "1-2 sentences: what this document is for",
  "keyTopics": ["3-5 main topics"],
  "dataCategories": ["USE ONLY: {taxonomy}"],
  "stakeholders": ["people, teams or companies mentioned"],
  "mentionedSystems": ["software or systems mentioned"],
  "hasTables": true/false,
  "dateRange": "period covered, or null",
  "meetingDate": "date of the meeting for meeting notes, or null",
  "metrics": ["measured quantities such as Revenue, Quantity, Cost"],
  "primaryEntities": ["Products, Customers, Orders, Employees, ..."],
  "departments": ["Finance, Sales, Operations, ..."],
  "hasAggregations": true/false,
  "timeframe": "Daily | Weekly | Monthly | Quarterly | Yearly | Snapshot"
}}

Return ONLY valid JSON: no markdown, no explanation.\
"""


def build_document_prompt(
    filename: str,
    structure: Optional[SpreadsheetStructure] = None,
    excerpt: Optional[str] = None,
) -> str:
    parts = [_PROMPT_HEADER.format(filename=filename), _FOCUS[file_category(filename)]]
    if structure is not None:
        parts.append("SPREADSHEET STRUCTURE (already extracted):\n" + structure.skeleton.render())
    if excerpt:
        parts.append("DOCUMENT EXCERPT:\n" + excerpt)
    parts.append(_JSON_SHAPE.format(taxonomy=DATA_TYPE_TAXONOMY))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Result handling
# ---------------------------------------------------------------------------

def fallback_document(customer_id: int, filename: str) -> DocumentMetadata:
    return DocumentMetadata(customer_id=customer_id, filename=filename)


def is_fallback(doc: DocumentMetadata) -> bool:
    return not (doc.document_type or doc.purpose or doc.key_topics)


def normalize_categories(values: List[str]) -> List[str]:
    """Map categories onto the taxonomy spelling; unknown ones are kept as given."""
    out: List[str] = []
    for value in values:
        name = _TAXONOMY.get(value.strip().lower(), value.strip())
        if name not in out:
            out.append(name)
    return out


def document_from_reply(value: Any, customer_id: int, filename: str) -> DocumentMetadata:
    """Coerce an assistant JSON reply into DocumentMetadata; fallback if unusable."""
    if isinstance(value, list) and value and isinstance(value[0], dict):
        value = value[0]
    if not isinstance(value, dict):
        return fallback_document(customer_id, filename)

    data: Dict[str, Any] = snake_keys(value)
    for field in _LIST_FIELDS:
        if field in data:
            data[field] = as_str_list(data[field])
    if "data_categories" in data:
        data["data_categories"] = normalize_categories(data["data_categories"])

    extra = {k: v for k, v in data.items() if k not in _COMMON_FIELDS}
    common = {k: v for k, v in data.items() if k in _COMMON_FIELDS}
    common.pop("id", None)
    common.pop("template_relevance", None)
    common.update(customer_id=customer_id, filename=filename, extra_fields=extra)
    try:
        return DocumentMetadata.model_validate(common)
    except ValidationError as exc:
        logger.warning("Document analysis reply for %s failed validation: %s", filename, exc.error_count())
        return fallback_document(customer_id, filename)


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class DocumentAnalyzer:
    """Builds DocumentMetadata for one uploaded document and scores it."""

    def __init__(
        self,
        store: MetadataStore,
        scorer: RelevanceScorer,
        assistant: Any,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.scorer = scorer
        self.assistant = assistant
        self.attempts = attempts if attempts is not None else settings.METADATA_RETRY_ATTEMPTS
        self.delay = delay if delay is not None else settings.METADATA_RETRY_DELAY

    async def analyze(
        self,
        customer_id: int,
        filename: str,
        content: Optional[bytes] = None,
    ) -> DocumentAnalysisResponse:
        customer = await self.store.get_customer(customer_id)
        if customer is None:
            raise NotFound(f"Customer {customer_id} not found")
        workspace = customer.workspace_slug
        if not workspace:
            raise NoContext(f"Customer {customer_id} has no assistant workspace")

        structure = None
        excerpt = None
        if content:
            try:
                structure = await asyncio.to_thread(spreadsheet_structure, filename, content)
            except Exception as exc:
                logger.warning("Spreadsheet pre-analysis of %s failed: %s", filename, exc)
            if Path(filename).suffix.lower() in TEXT_EXTENSIONS:
                excerpt = truncate_text(
                    content.decode("utf-8", errors="replace"),
                    settings.SKELETON_MAX_CHARS,
                    suffix="\n... (truncated)",
                )

        prompt = build_document_prompt(filename, structure, excerpt)
        logger.info("Analyzing document %s for customer %d (%d chars)", filename, customer_id, len(prompt))
        last_raw = ""

        async def _attempt() -> DocumentMetadata:
            nonlocal last_raw
            try:
                result = await self.assistant.query_json(workspace, prompt)
            except DocForgeError as exc:
                logger.warning("Document analysis call for %s failed: %s", filename, exc)
                return fallback_document(customer_id, filename)
            if isinstance(result, Parsed):
                return document_from_reply(result.value, customer_id, filename)
            last_raw = result.raw_text
            return fallback_document(customer_id, filename)

        doc = await retry_until(
            _attempt,
            lambda d: not is_fallback(d),
            attempts=self.attempts,
            delay=self.delay,
            label=f"document analysis {filename}",
        )
        if is_fallback(doc):
            raise EmptyGeneration(
                f"Could not extract metadata for '{filename}' after {self.attempts} attempts",
                raw_text=last_raw,
            )

        if structure is not None:
            doc.extra_fields.update(structure.as_extra_fields())
            doc.has_tables = doc.has_tables or bool(structure.column_headers)

        # Re-analysis replaces the record for the same customer and filename
        for existing in await self.store.list_documents([customer_id]):
            if existing.filename == filename:
                doc.id = existing.id
                doc.template_relevance = existing.template_relevance
                break

        saved = await self.store.put_document(doc)
        logger.info("Document %s saved as %s", filename, saved.id)
        return await self._score(saved, workspace)

    async def _score(self, doc: DocumentMetadata, workspace: str) -> DocumentAnalysisResponse:
        try:
            templates = await self.store.list_templates()
            entries = await self.scorer.score(doc, templates, workspace)
            if entries:
                doc = await self.store.merge_document_relevance(doc.id, entries)
        except Exception as exc:
            logger.exception("Relevance scoring failed for document %s", doc.id)
            return DocumentAnalysisResponse(
                document=doc,
                scoring_error=f"{type(exc).__name__}: {exc}",
                message="Document saved but relevance scoring failed",
            )
        return DocumentAnalysisResponse(document=doc, scored_templates=len(entries))
