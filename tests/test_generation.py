"""Tests for running compiled generators and validating their output."""
import json

import pytest

from app.services.exceptions import GenerationFailed, NoContext, NotFound, UpstreamUnavailable
from app.services.generation import GenerationService
from app.services.generator_contract import (
    DocumentBuilder,
    DocumentOutput,
    SpreadsheetBuilder,
    SpreadsheetOutput,
    Toolkit,
    builder_for,
    normalize_output,
)
from app.services.sandbox import CodeSandbox
from tests.conftest import write_source
from tests.fakes import MARKDOWN_TEMPLATE, ORDERS_GENERATOR, FakeAssistant, make_customer, make_template

SLUG = "quarterly-report"

SPREADSHEET_GENERATOR = '''\
async def generate(toolkit, builder, context):
    rows = await toolkit.query_structured("Stock levels as JSON")
    builder.set_cell("Inventory", "A1", "Product", bold=True)
    builder.insert_rows("Inventory", 3, len(rows), copy_style_from_row=2)
    builder.set_range("Inventory", "A2", [[r["product"], r["qty"]] for r in rows])
'''


@pytest.fixture
def service(store, artifacts, assistant) -> GenerationService:
    return GenerationService(store, artifacts, assistant, CodeSandbox(timeout=5))


async def _setup(store, templates_root, generator=ORDERS_GENERATOR, workspace="acme", **template_fields):
    await store.put_customer(make_customer(7, workspace_slug=workspace))
    await store.put_template(make_template(SLUG, **template_fields))
    write_source(templates_root, SLUG, MARKDOWN_TEMPLATE)
    (templates_root / SLUG / "generator.py").write_text(generator, encoding="utf-8")


# ---------------------------------------------------------------------------
# GenerationService
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_document(service, store, templates_root, assistant):
    await _setup(store, templates_root)
    assistant.default_reply = json.dumps([{"id": "A-1", "amount": 10}, {"id": "A-2", "amount": 5}])

    result = await service.generate(SLUG, 7, {"period": "Q3"})

    assert result.output_format == "docx"
    assert result.used_context == "acme"
    assert result.query_count == 1
    assert isinstance(result.output, DocumentOutput)
    assert result.output.blocks[0].text == "Orders for Acme"
    assert result.output.blocks[1].rows[1:] == [["A-1", "10"], ["A-2", "5"]]
    assert assistant.calls[0][0] == "acme"

    meta = await store.get_template(SLUG)
    assert meta.generation_count == 1
    assert len(meta.actual_generation_times) == 1
    assert meta.last_generated_at is not None


@pytest.mark.asyncio
async def test_generate_spreadsheet(service, store, templates_root, assistant):
    await _setup(store, templates_root, generator=SPREADSHEET_GENERATOR, output_format="xlsx")
    assistant.default_reply = json.dumps([{"product": "Widget", "qty": 4}])

    result = await service.generate(SLUG, 7)

    assert result.output_format == "xlsx"
    assert isinstance(result.output, SpreadsheetOutput)
    sheet = result.output.sheets[0]
    assert sheet.name == "Inventory"
    assert sheet.cells[0].ref == "A1" and sheet.cells[0].bold is True
    assert sheet.insert_rows[0].copy_style_from_row == 2
    assert sheet.ranges[0].values == [["Widget", 4]]


@pytest.mark.asyncio
async def test_context_specific_generator_preferred(service, store, templates_root, assistant):
    await _setup(store, templates_root)
    (templates_root / SLUG / "generator.acme.py").write_text(
        "async def generate(toolkit, builder, context):\n    builder.add_heading('Acme edition', 1)\n",
        encoding="utf-8",
    )

    result = await service.generate(SLUG, 7)
    assert result.output.blocks[0].text == "Acme edition"


@pytest.mark.asyncio
async def test_failed_queries_degrade_to_empty_data(service, store, templates_root):
    await _setup(store, templates_root)
    service.assistant = FakeAssistant(responder=lambda ws, msg: UpstreamUnavailable("down"))

    result = await service.generate(SLUG, 7)
    assert result.output.blocks[1].rows == [["Order", "Amount"]]


@pytest.mark.asyncio
async def test_unknown_customer(service, store, templates_root):
    await _setup(store, templates_root)
    with pytest.raises(NotFound):
        await service.generate(SLUG, 99)


@pytest.mark.asyncio
async def test_customer_without_workspace(service, store, templates_root):
    await _setup(store, templates_root, workspace=None)
    with pytest.raises(NoContext):
        await service.generate(SLUG, 7)


@pytest.mark.asyncio
async def test_template_not_compiled(service, store):
    await store.put_customer(make_customer(7, workspace_slug="acme"))
    with pytest.raises(NotFound, match="has not been compiled"):
        await service.generate(SLUG, 7)


@pytest.mark.asyncio
async def test_generator_that_writes_nothing_fails(service, store, templates_root):
    await _setup(store, templates_root, generator="async def generate(toolkit, builder, context):\n    pass\n")
    with pytest.raises(GenerationFailed, match="no content"):
        await service.generate(SLUG, 7)
    assert (await store.get_template(SLUG)).generation_count == 0


# ---------------------------------------------------------------------------
# Contract helpers
# ---------------------------------------------------------------------------

def test_builder_for_formats():
    assert isinstance(builder_for("xlsx"), SpreadsheetBuilder)
    assert isinstance(builder_for(".XLSX"), SpreadsheetBuilder)
    assert isinstance(builder_for("docx"), DocumentBuilder)
    assert isinstance(builder_for(None), DocumentBuilder)


def test_normalize_markdown_return_value():
    output = normalize_output("# Title\n\nIntro text\n- one\n- two\n1. first", DocumentBuilder())
    assert [b.type for b in output.blocks] == ["heading", "paragraph", "bullet_list", "numbered_list"]
    assert output.blocks[2].items == ["one", "two"]


def test_normalize_returned_sheets():
    output = normalize_output(
        [{"name": "Data", "cells": [{"ref": "b2", "v": 3, "numFmt": "0.00"}]}], SpreadsheetBuilder()
    )
    cell = output.sheets[0].cells[0]
    assert (cell.ref, cell.value, cell.num_fmt) == ("B2", 3, "0.00")


def test_normalize_rejects_bad_cell_reference():
    with pytest.raises(GenerationFailed, match="validation"):
        normalize_output({"sheets": [{"name": "Data", "cells": [{"ref": "not-a-cell"}]}]}, SpreadsheetBuilder())


def test_normalize_rejects_wrong_type():
    with pytest.raises(GenerationFailed):
        normalize_output(42, DocumentBuilder())


def test_normalize_rejects_empty_spreadsheet():
    with pytest.raises(GenerationFailed, match="no spreadsheet operations"):
        normalize_output({"sheets": [{"name": "Data"}]}, SpreadsheetBuilder())


@pytest.mark.asyncio
async def test_toolkit_counts_queries_and_returns_empty_on_unparseable():
    toolkit = Toolkit(FakeAssistant(default_reply="not json"), "acme")
    assert await toolkit.query_structured("anything") == []
    assert await toolkit.query_text("anything") == "not json"
    assert toolkit.call_count == 2
