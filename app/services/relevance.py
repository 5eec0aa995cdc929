"""
Document-to-template relevance scoring.

Two strategies, tried in order:

1. **Assistant** — only when the customer has a workspace.  The document and
   template summaries are sent as one prompt and a JSON array of scores is
   parsed from the reply.
2. **Rule-based** — deterministic metadata overlap heuristic, 0–10.

Either way ``RelevanceScorer.score`` returns exactly one entry per input
template.  Scores are folded into a document's stored list with
``merge_relevance``.

Public API
----------
calculate_basic_relevance(template, document)          -> RuleScore
merge_relevance(existing, incoming, limit=20)          -> List[RelevanceEntry]
templates_to_calculate(document, templates, force)     -> List[TemplateMetadata]
build_metadata_context(template, documents)            -> str
RelevanceScorer.score(document, templates, workspace)  -> List[RelevanceEntry]
"""
from __future__ import annotations

import dataclasses
import json
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence

from app.models.schemas import DocumentMetadata, RelevanceEntry, TemplateMetadata
from app.services.exceptions import DocForgeError
from app.utils.helpers import as_str_list, overlapping, text_overlaps
from app.utils.parsing import Parsed

logger = logging.getLogger(__name__)

MAX_SCORE = 10.0
DEFAULT_REASONING = "General compatibility based on available metadata"

SYSTEM_KEYWORDS = ("system", "platform", "application", "tool", "software", "service")
SHARED_PURPOSE_TERMS = (
    "report", "analysis", "summary", "tracking", "planning",
    "metrics", "performance", "status", "review", "assessment",
)

# Documents listed in detail in the compile prompt; the rest get one line
CONTEXT_DETAILED_DOCUMENTS = 5


# ---------------------------------------------------------------------------
# Rule-based heuristic
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class RuleScore:
    score: float
    reasons: List[str]

    @property
    def reasoning(self) -> str:
        return "; ".join(self.reasons) or DEFAULT_REASONING


def calculate_basic_relevance(template: TemplateMetadata, document: DocumentMetadata) -> RuleScore:
    """
    Score how well *document* can feed *template* from metadata alone.

    Point budget (capped at 10, rounded to one decimal):
    data types 0–4, document type 0.5 bonus + 0.5 base, entities 0–3,
    content signals 0–2, structure 0–2.
    """
    score = 0.0
    reasons: List[str] = []
    extra = document.extra_fields or {}

    # 1. Data type match (0-4)
    required = template.required_data_types
    if required:
        overlap = overlapping(required, document.data_categories)
        if overlap:
            ratio = len(overlap) / len(required)
            score += ratio * 4
            if ratio >= 1:
                reasons.append(f"Matches ALL {len(overlap)} required data types: {', '.join(overlap)}")
            else:
                reasons.append(
                    f"Matches {len(overlap)}/{len(required)} data types: {', '.join(overlap)}"
                )
    else:
        score += 2

    # 2. Document type compatibility (soft bonus) plus a flat base
    if template.compatible_document_types and document.document_type:
        if overlapping([document.document_type], template.compatible_document_types):
            score += 0.5
            reasons.append(f"Document type '{document.document_type}' is compatible (bonus)")
    score += 0.5

    # 3. Entity / topic match (0-3)
    entities = template.expected_entities
    if entities:
        topic_overlap = overlapping(entities, document.key_topics)
        if topic_overlap:
            score += len(topic_overlap) / len(entities) * 3
            reasons.append(
                f"Contains {len(topic_overlap)}/{len(entities)} expected entities: "
                f"{', '.join(topic_overlap)}"
            )
        else:
            stakeholder_overlap = overlapping(entities, document.stakeholders)
            if stakeholder_overlap:
                score += 0.5
                reasons.append(f"Mentions {len(stakeholder_overlap)} expected entities in stakeholders")
            primary_overlap = overlapping(entities, as_str_list(extra.get("primary_entities")))
            if primary_overlap:
                score += 1
                reasons.append(f"Contains {len(primary_overlap)} expected entities in primary entities")
    else:
        score += 1.5

    # 4. Content signals (0-2)
    content_points = 0.0
    if document.mentioned_systems:
        template_systems = [
            e for e in entities if any(k in e.lower() for k in SYSTEM_KEYWORDS)
        ]
        if overlapping(template_systems, document.mentioned_systems):
            content_points += 0.5
            reasons.append("Mentions relevant systems/platforms")

    audience = (template.target_audience or "").lower()
    departments = as_str_list(extra.get("departments"))
    if audience and any(text_overlaps(d, audience) for d in departments):
        content_points += 0.5
        reasons.append("Relevant to target audience/department")

    if document.purpose and template.purpose:
        doc_purpose, tpl_purpose = document.purpose.lower(), template.purpose.lower()
        shared = [t for t in SHARED_PURPOSE_TERMS if t in doc_purpose and t in tpl_purpose]
        if shared:
            content_points += 0.5
            reasons.append(f"Shared purpose: {', '.join(shared)}")

    score += min(2.0, content_points)

    # 5. Structural bonuses (0-2)
    if template.has_tables and document.has_tables:
        score += 0.5
        reasons.append("Both have tabular data")

    if template.requires_aggregation:
        metrics = as_str_list(extra.get("metrics"))
        if metrics:
            score += 0.75
            reasons.append(f"Has {len(metrics)} metrics for aggregation")
        elif extra.get("has_aggregations"):
            score += 0.75
            reasons.append("Has aggregations")

    if template.requires_time_series:
        if document.date_range or extra.get("timeframe") or document.meeting_date:
            score += 0.75
            reasons.append("Has time-series/temporal data")

    score = min(MAX_SCORE, max(0.0, score))
    return RuleScore(score=round(score, 1), reasons=reasons)


def rule_based_entry(template: TemplateMetadata, document: DocumentMetadata) -> RelevanceEntry:
    result = calculate_basic_relevance(template, document)
    return RelevanceEntry(
        template_slug=template.template_slug,
        template_name=template.template_name,
        score=result.score,
        reasoning=result.reasoning,
    )


# ---------------------------------------------------------------------------
# Merge law
# ---------------------------------------------------------------------------

def _rank_key(entry: RelevanceEntry):
    return (-entry.score, entry.template_slug)


def merge_relevance(
    existing: Iterable[RelevanceEntry],
    incoming: Iterable[RelevanceEntry],
    limit: int = 20,
) -> List[RelevanceEntry]:
    """
    Fold *incoming* scores into *existing*, keyed by template slug.

    Incoming entries replace existing ones for the same slug.  The result is
    sorted by score descending (slug breaks ties) and truncated to *limit*,
    so ``merge(merge(a, b), b) == merge(a, b)``.
    """
    by_slug: Dict[str, RelevanceEntry] = {e.template_slug: e for e in existing}
    for entry in incoming:
        by_slug[entry.template_slug] = entry
    return sorted(by_slug.values(), key=_rank_key)[:limit]


def templates_to_calculate(
    document: DocumentMetadata,
    templates: Sequence[TemplateMetadata],
    force_recalculate: bool = False,
) -> List[TemplateMetadata]:
    """Templates that still need a score for *document*."""
    if force_recalculate or not document.template_relevance:
        return list(templates)
    scored = {e.template_slug for e in document.template_relevance}
    return [t for t in templates if t.template_slug not in scored]


# ---------------------------------------------------------------------------
# Compile-prompt context
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class DocumentMatch:
    document: DocumentMetadata
    score: float
    reasoning: str


def rank_documents(template: TemplateMetadata, documents: Sequence[DocumentMetadata]) -> List[DocumentMatch]:
    """Rank *documents* for *template*, preferring stored scores over on-the-fly ones."""
    matches: List[DocumentMatch] = []
    for doc in documents:
        stored = next(
            (e for e in doc.template_relevance if e.template_slug == template.template_slug), None
        )
        if stored is not None:
            matches.append(DocumentMatch(doc, stored.score, stored.reasoning))
        else:
            result = calculate_basic_relevance(template, doc)
            matches.append(DocumentMatch(doc, result.score, result.reasoning))
    matches.sort(key=lambda m: (-m.score, m.document.filename))
    return matches


def build_metadata_context(template: TemplateMetadata, documents: Sequence[DocumentMetadata]) -> str:
    """Render the template's data needs and the customer's best-matching documents."""
    lines: List[str] = ["=== TEMPLATE CONTEXT ==="]
    lines.append(f"This template requires: {template.purpose or 'document generation'}")
    if template.required_data_types:
        lines.append(f"Expected data types: {', '.join(template.required_data_types)}")
    if template.expected_entities:
        lines.append(f"Key entities needed: {', '.join(template.expected_entities)}")

    operations: List[str] = []
    if template.requires_aggregation:
        operations.append("aggregation (sums, averages, counts)")
    if template.requires_time_series:
        operations.append("time-series ordering")
    if template.requires_comparisons:
        operations.append("comparisons (before/after)")
    if template.requires_filtering:
        operations.append("data filtering")
    if operations:
        lines.append(f"Required operations: {', '.join(operations)}")

    lines.append("")
    matches = rank_documents(template, documents)
    if not matches:
        lines.append("=== NO DOCUMENT METADATA AVAILABLE ===")
        lines.append("Query the workspace broadly for the data this template needs.")
        return "\n".join(lines)

    lines.append("=== RELEVANT WORKSPACE DOCUMENTS ===")
    lines.append(f"Found {len(matches)} documents. Focus on the most relevant:")
    lines.append("")
    for idx, match in enumerate(matches[:CONTEXT_DETAILED_DOCUMENTS], start=1):
        doc = match.document
        lines.append(f"{idx}. {doc.filename} (Relevance: {match.score}/10)")
        lines.append(f"   Reason: {match.reasoning}")
        if doc.purpose:
            lines.append(f"   Purpose: {doc.purpose}")
        if doc.data_categories:
            lines.append(f"   Contains: {', '.join(doc.data_categories)}")
        metrics = as_str_list((doc.extra_fields or {}).get("metrics"))
        if metrics:
            more = "..." if len(metrics) > 5 else ""
            lines.append(f"   Metrics: {', '.join(metrics[:5])}{more}")
        lines.append("")

    rest = matches[CONTEXT_DETAILED_DOCUMENTS:]
    if rest:
        lines.append(f"Other available documents ({len(rest)}):")
        for match in rest:
            lines.append(f"- {match.document.filename} (Relevance: {match.score}/10)")

    return "\n".join(lines).rstrip()


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

_RELEVANCE_PROMPT = """\
You are matching a customer document against document templates.

DOCUMENT:
{document_summary}

TEMPLATES:
{template_summaries}

For EACH template, rate from 0 to 10 how useful this document is as a data \
source for generating that template.  Judge the content, not the file format.

Respond ONLY with a JSON array, one object per template, no markdown:
[{{"templateSlug": "...", "score": 7.5, "reasoning": "under 40 words"}}]\
"""


def _document_summary(doc: DocumentMetadata) -> str:
    summary: Dict[str, Any] = {
        "filename": doc.filename,
        "documentType": doc.document_type,
        "purpose": doc.purpose,
        "keyTopics": doc.key_topics,
        "dataCategories": doc.data_categories,
        "stakeholders": doc.stakeholders,
        "mentionedSystems": doc.mentioned_systems,
        "hasTables": doc.has_tables,
    }
    for key in ("metrics", "primary_entities", "timeframe"):
        if key in (doc.extra_fields or {}):
            summary[key] = doc.extra_fields[key]
    return json.dumps(summary, default=str)


def _template_summary(tpl: TemplateMetadata) -> str:
    return json.dumps({
        "templateSlug": tpl.template_slug,
        "templateName": tpl.template_name,
        "purpose": tpl.purpose,
        "requiredDataTypes": tpl.required_data_types,
        "expectedEntities": tpl.expected_entities,
        "compatibleDocumentTypes": tpl.compatible_document_types,
    })


class RelevanceScorer:
    """
    Scores one document against a set of templates.

    *assistant* is anything with an async ``query_json(workspace, prompt)``;
    without one, or without a workspace, scoring is rule-based only.
    """

    RELEVANCE_PROMPT = _RELEVANCE_PROMPT

    def __init__(self, assistant: Optional[Any] = None) -> None:
        self.assistant = assistant

    async def score(
        self,
        document: DocumentMetadata,
        templates: Sequence[TemplateMetadata],
        workspace_slug: Optional[str] = None,
    ) -> List[RelevanceEntry]:
        if not templates:
            return []

        if workspace_slug and self.assistant is not None:
            ai_entries = await self._score_with_assistant(document, templates, workspace_slug)
            if ai_entries:
                covered = {e.template_slug for e in ai_entries}
                ai_entries.extend(
                    rule_based_entry(t, document) for t in templates if t.template_slug not in covered
                )
                return sorted(ai_entries, key=_rank_key)
            logger.info(
                "score: assistant gave no usable scores for %s, falling back to rule-based",
                document.filename,
            )

        return sorted((rule_based_entry(t, document) for t in templates), key=_rank_key)

    async def _score_with_assistant(
        self,
        document: DocumentMetadata,
        templates: Sequence[TemplateMetadata],
        workspace_slug: str,
    ) -> List[RelevanceEntry]:
        prompt = self.RELEVANCE_PROMPT.format(
            document_summary=_document_summary(document),
            template_summaries="\n".join(_template_summary(t) for t in templates),
        )
        try:
            result = await self.assistant.query_json(workspace_slug, prompt)
        except DocForgeError as exc:
            logger.warning("score: assistant call failed for %s: %s", document.filename, exc)
            return []

        if not isinstance(result, Parsed):
            logger.warning(
                "score: unparseable assistant reply for %s: %s",
                document.filename,
                result.raw_text[:200],
            )
            return []

        items = result.value
        if isinstance(items, dict):
            items = items.get("scores") or items.get("templates") or [items]
        if not isinstance(items, list):
            return []

        by_slug = {t.template_slug: t for t in templates}
        entries: Dict[str, RelevanceEntry] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            slug = item.get("templateSlug") or item.get("template_slug") or item.get("slug")
            score = _clamp_score(item.get("score"))
            if slug not in by_slug or score is None:
                continue
            entries[slug] = RelevanceEntry(
                template_slug=slug,
                template_name=by_slug[slug].template_name,
                score=score,
                reasoning=str(item.get("reasoning") or DEFAULT_REASONING)[:500],
            )
        return list(entries.values())


def _clamp_score(value: Any) -> Optional[float]:
    """
    Parse *value* as a 0–10 score rounded to one decimal.  None for garbage
    and non-finite numbers, so the rule-based score fills that template in.
    """
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(score):
        return None
    return round(max(0.0, min(MAX_SCORE, score)), 1)
