"""Tests for document metadata analysis and the follow-up relevance scoring."""
import io
import json

import pytest
import pytest_asyncio
from openpyxl import Workbook

from app.models.schemas import RelevanceEntry
from app.services.document_analyzer import (
    DocumentAnalyzer,
    build_document_prompt,
    document_from_reply,
    file_category,
    is_fallback,
)
from app.services.exceptions import EmptyGeneration, NoContext, NotFound
from app.services.relevance import RelevanceScorer
from tests.fakes import make_customer, make_document, make_template

GOOD_REPLY = json.dumps({
    "documentType": "Spreadsheet",
    "purpose": "Open orders by region",
    "keyTopics": ["Orders", "Revenue"],
    "dataCategories": ["financial", "Sales", "Weather"],
    "hasTables": True,
    "metrics": ["Revenue"],
    "timeframe": "Monthly",
})

SCORE_REPLY = json.dumps([
    {"templateSlug": "quarterly-report", "score": 8.5, "reasoning": "Orders feed the report"},
])


def _workbook_bytes() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"
    ws.append(["Product", "Qty", "Cost"])
    ws.append(["Widget", 4, 2.5])
    ws.append(["Gadget", 2, 9.0])
    ws.append(["Total", "=SUM(B2:B3)", None])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


class _BrokenScorer(RelevanceScorer):
    async def score(self, document, templates, workspace_slug=None):
        raise RuntimeError("scoring backend went away")


@pytest.fixture
def analyzer(store, assistant) -> DocumentAnalyzer:
    return DocumentAnalyzer(store, RelevanceScorer(assistant), assistant, attempts=3, delay=0)


@pytest_asyncio.fixture
async def customer(store):
    return await store.put_customer(make_customer(7, workspace_slug="acme"))


# ---------------------------------------------------------------------------
# Reply handling
# ---------------------------------------------------------------------------

def test_document_from_reply_splits_extra_fields():
    doc = document_from_reply(json.loads(GOOD_REPLY), 7, "orders.xlsx")

    assert doc.customer_id == 7
    assert doc.filename == "orders.xlsx"
    assert doc.document_type == "Spreadsheet"
    assert doc.key_topics == ["Orders", "Revenue"]
    assert doc.data_categories == ["Financial", "Sales", "Weather"]
    assert doc.has_tables is True
    assert doc.extra_fields == {"metrics": ["Revenue"], "timeframe": "Monthly"}
    assert not is_fallback(doc)


def test_document_from_reply_ignores_ids_and_scores():
    doc = document_from_reply(
        {"id": 99, "purpose": "Notes", "templateRelevance": [{"bogus": 1}], "stakeholders": "Finance"},
        7,
        "notes.md",
    )
    assert doc.id is None
    assert doc.template_relevance == []
    assert doc.stakeholders == ["Finance"]


@pytest.mark.parametrize("value", [None, "text", [], [1, 2], {"hasTables": True}])
def test_unusable_reply_is_fallback(value):
    assert is_fallback(document_from_reply(value, 7, "orders.xlsx"))


@pytest.mark.parametrize(
    "filename,category",
    [
        ("orders.xlsx", "spreadsheet"),
        ("orders.CSV", "spreadsheet"),
        ("deck.pptx", "presentation"),
        ("chart.png", "image"),
        ("etl.py", "code"),
        ("minutes.docx", "document"),
    ],
)
def test_file_category(filename, category):
    assert file_category(filename) == category


def test_prompt_names_file_and_taxonomy():
    prompt = build_document_prompt("minutes.md", excerpt="# Weekly sync")
    assert '"minutes.md"' in prompt
    assert "TEXT DOCUMENT" in prompt
    assert "DOCUMENT EXCERPT:\n# Weekly sync" in prompt
    assert "Supply Chain" in prompt


# ---------------------------------------------------------------------------
# Analyze
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_analyze_saves_and_scores_document(analyzer, store, assistant, customer):
    await store.put_template(make_template())
    assistant.replies = [GOOD_REPLY, SCORE_REPLY]

    result = await analyzer.analyze(7, "orders.csv")

    assert result.scoring_error is None
    assert result.scored_templates == 1
    doc = result.document
    assert doc.id is not None
    assert [(e.template_slug, e.score) for e in doc.template_relevance] == [("quarterly-report", 8.5)]
    assert await store.get_document(doc.id) == doc
    assert [c[0] for c in assistant.calls] == ["acme", "acme"]


@pytest.mark.asyncio
async def test_analyze_retries_until_usable(analyzer, store, assistant, customer):
    assistant.replies = ["I cannot tell.", "", GOOD_REPLY]

    result = await analyzer.analyze(7, "orders.csv")

    assert len(assistant.calls) == 3
    assert result.document.purpose == "Open orders by region"
    assert result.scored_templates == 0


@pytest.mark.asyncio
async def test_analyze_gives_up_without_saving(analyzer, store, assistant, customer):
    assistant.default_reply = "Sorry, no idea."

    with pytest.raises(EmptyGeneration) as exc_info:
        await analyzer.analyze(7, "orders.csv")

    assert exc_info.value.raw_text == "Sorry, no idea."
    assert len(assistant.calls) == 3
    assert await store.list_documents() == []


@pytest.mark.asyncio
async def test_spreadsheet_structure_lands_in_extra_fields(analyzer, assistant, customer):
    assistant.replies = [GOOD_REPLY]

    result = await analyzer.analyze(7, "orders.xlsx", _workbook_bytes())

    extra = result.document.extra_fields
    assert extra["sheet_names"] == ["Inventory"]
    assert extra["column_headers"] == ["Product", "Qty", "Cost"]
    assert extra["column_count"] == 3
    assert extra["data_row_count"] == 3
    assert extra["has_formulas"] is True
    assert extra["metrics"] == ["Revenue"]

    prompt = assistant.calls[0][1]
    assert "SPREADSHEET STRUCTURE" in prompt
    assert "Header (row 1): Product | Qty | Cost" in prompt


@pytest.mark.asyncio
async def test_unreadable_workbook_is_analysed_without_structure(analyzer, assistant, customer):
    assistant.replies = [GOOD_REPLY]

    result = await analyzer.analyze(7, "orders.xlsx", b"not a zip file")

    assert "sheet_names" not in result.document.extra_fields
    assert "SPREADSHEET STRUCTURE" not in assistant.calls[0][1]


@pytest.mark.asyncio
async def test_reanalysis_replaces_existing_record(analyzer, store, assistant, customer):
    existing = await store.put_document(make_document(
        7,
        "orders.csv",
        template_relevance=[RelevanceEntry(template_slug="old", score=4.0, reasoning="kept")],
    ))
    assistant.replies = [GOOD_REPLY]

    result = await analyzer.analyze(7, "orders.csv")

    assert result.document.id == existing.id
    assert [e.template_slug for e in result.document.template_relevance] == ["old"]
    assert len(await store.list_documents([7])) == 1


@pytest.mark.asyncio
async def test_scoring_failure_is_reported_separately(store, assistant, customer):
    await store.put_template(make_template())
    analyzer = DocumentAnalyzer(store, _BrokenScorer(assistant), assistant, delay=0)
    assistant.replies = [GOOD_REPLY]

    result = await analyzer.analyze(7, "orders.csv")

    assert result.scoring_error == "RuntimeError: scoring backend went away"
    assert result.scored_templates == 0
    assert result.message == "Document saved but relevance scoring failed"
    saved = await store.get_document(result.document.id)
    assert saved.purpose == "Open orders by region"
    assert saved.template_relevance == []


@pytest.mark.asyncio
async def test_unknown_customer(analyzer, assistant):
    with pytest.raises(NotFound):
        await analyzer.analyze(404, "orders.csv")
    assert assistant.calls == []


@pytest.mark.asyncio
async def test_customer_without_workspace(analyzer, store, assistant):
    await store.put_customer(make_customer(7))
    with pytest.raises(NoContext):
        await analyzer.analyze(7, "orders.csv")
    assert assistant.calls == []
