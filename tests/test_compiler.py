"""Tests for the template compile pipeline."""
from pathlib import Path

import pytest
from openpyxl import Workbook

from app.models.schemas import CompileRequest
from app.services.compiler import STAGES, TemplateCompiler
from app.services.exceptions import EmptyGeneration, NoContext, NotFound
from app.services.job_manager import CancellationToken, JobCancelled, JobKind, JobStatus
from app.services.progress import progress_broker
from tests.conftest import write_source
from tests.fakes import (
    MARKDOWN_TEMPLATE,
    ORDERS_GENERATOR,
    FakeAssistant,
    fenced,
    make_customer,
    make_document,
    make_template,
)

SLUG = "quarterly-report"
STAGE_NAMES = [name for name, _ in STAGES]


@pytest.fixture
def compiler(store, artifacts, assistant, manager) -> TemplateCompiler:
    return TemplateCompiler(store, artifacts, assistant, manager, default_workspace="")


async def _setup(store, templates_root: Path, workspace="acme", source=MARKDOWN_TEMPLATE):
    await store.put_template(make_template(SLUG, workspace_slug=workspace))
    if source is not None:
        write_source(templates_root, SLUG, source)


async def _compile(compiler: TemplateCompiler, request: CompileRequest = None, token=None):
    job_id = await compiler.manager.create_job(JobKind.COMPILE, template_slugs=[SLUG])
    result = await compiler.compile(SLUG, request or CompileRequest(), job_id, token)
    return job_id, result


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_compile_writes_generator(compiler, store, templates_root, assistant, manager):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    job_id, result = await _compile(compiler)

    artifact = templates_root / SLUG / "generator.py"
    assert result.artifact_ref == str(artifact)
    assert artifact.read_text(encoding="utf-8") == ORDERS_GENERATOR.strip() + "\n"
    assert result.used_context == "acme"
    assert result.revised is False

    assert len(assistant.calls) == 1
    workspace, prompt = assistant.calls[0]
    assert workspace == "acme"
    assert "SAMPLE ROW (replace): North | 100" in prompt
    assert "=== GENERATOR CONTRACT ===" in prompt
    assert "builder (document)" in prompt

    steps = (await manager.get_status(job_id)).steps
    assert [s.name for s in steps] == STAGE_NAMES
    assert all(s.status == "ok" for s in steps)


@pytest.mark.asyncio
async def test_compile_spreadsheet_template_uses_spreadsheet_contract(
    compiler, store, templates_root, assistant
):
    await store.put_template(make_template(SLUG, workspace_slug="acme"))
    wb = Workbook()
    ws = wb.active
    ws.title = "Inventory"
    ws.append(["Product", "Qty", "Cost"])
    ws.append(["Widget", 4, 2.5])
    (templates_root / SLUG).mkdir()
    wb.save(templates_root / SLUG / "template.xlsx")
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    await _compile(compiler)

    prompt = assistant.calls[0][1]
    assert "builder (spreadsheet)" in prompt
    assert 'Sheet "Inventory"' in prompt


@pytest.mark.asyncio
async def test_context_specific_artifact(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    _, result = await _compile(compiler, CompileRequest(context_specific=True))

    assert result.artifact_ref == str(templates_root / SLUG / "generator.acme.py")
    assert not (templates_root / SLUG / "generator.py").exists()


# ---------------------------------------------------------------------------
# Context resolution
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_no_context_fails_before_assistant_call(compiler, store, templates_root, assistant, manager):
    await _setup(store, templates_root, workspace=None)

    with pytest.raises(NoContext):
        await _compile(compiler)
    assert assistant.calls == []


@pytest.mark.asyncio
async def test_request_workspace_wins(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    _, result = await _compile(compiler, CompileRequest(workspace_slug="sales-ws"))

    assert result.used_context == "sales-ws"
    assert assistant.calls[0][0] == "sales-ws"


@pytest.mark.asyncio
async def test_customer_workspace_used_when_template_has_none(compiler, store, templates_root, assistant):
    await _setup(store, templates_root, workspace=None)
    await store.put_customer(make_customer(7, workspace_slug="acme-ws"))
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    _, result = await _compile(compiler, CompileRequest(customer_id=7))
    assert result.used_context == "acme-ws"


@pytest.mark.asyncio
async def test_default_workspace_without_metadata(store, artifacts, templates_root, assistant, manager):
    write_source(templates_root, SLUG, MARKDOWN_TEMPLATE)
    assistant.default_reply = fenced(ORDERS_GENERATOR)
    compiler = TemplateCompiler(store, artifacts, assistant, manager, default_workspace="shared")

    _, result = await _compile(compiler)
    assert result.used_context == "shared"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_template_is_not_found(compiler, assistant):
    with pytest.raises(NotFound):
        await _compile(compiler)
    assert assistant.calls == []


@pytest.mark.asyncio
async def test_missing_source_fails_before_assistant_call(compiler, store, templates_root, assistant, manager):
    await _setup(store, templates_root, source=None)

    job_id = await manager.create_job(JobKind.COMPILE, template_slugs=[SLUG])
    with pytest.raises(NotFound, match="no source file"):
        await compiler.compile(SLUG, CompileRequest(), job_id)

    assert assistant.calls == []
    steps = (await manager.get_status(job_id)).steps
    assert steps[-1].name == "read_artifact"
    assert steps[-1].status == "start"


@pytest.mark.asyncio
async def test_empty_skeleton_is_not_found(compiler, store, templates_root, assistant):
    await _setup(store, templates_root, source="\n\n   \n")

    with pytest.raises(NotFound, match="no extractable structure"):
        await _compile(compiler)
    assert assistant.calls == []


@pytest.mark.asyncio
async def test_prose_reply_keeps_existing_generator(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    existing = templates_root / SLUG / "generator.py"
    existing.write_text("OLD = 1\n", encoding="utf-8")
    assistant.default_reply = "I'm not able to build a generator for this template."

    with pytest.raises(EmptyGeneration) as excinfo:
        await _compile(compiler)

    assert excinfo.value.raw_text == assistant.default_reply
    assert existing.read_text(encoding="utf-8") == "OLD = 1\n"


@pytest.mark.asyncio
async def test_code_without_generate_is_rejected(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    assistant.default_reply = fenced("TOTAL = 1\n")

    with pytest.raises(EmptyGeneration, match="no usable generator"):
        await _compile(compiler)
    assert not (templates_root / SLUG / "generator.py").exists()


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_first_stage(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelled):
        await _compile(compiler, token=token)
    assert assistant.calls == []


# ---------------------------------------------------------------------------
# Prompt shape
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_revision_instructions_come_first(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    (templates_root / SLUG / "generator.py").write_text(ORDERS_GENERATOR, encoding="utf-8")
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    _, result = await _compile(compiler, CompileRequest(instructions="Add a totals row"))

    prompt = assistant.calls[0][1]
    assert prompt.startswith("=== REVISION INSTRUCTIONS (HIGHEST PRIORITY) ===\nAdd a totals row")
    assert prompt.index("CURRENT GENERATOR") < prompt.index("TEMPLATE SKELETON")
    assert 'toolkit.query_structured("List open orders' in prompt
    assert result.revised is True


@pytest.mark.asyncio
async def test_instructions_without_existing_generator_are_additional(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    _, result = await _compile(compiler, CompileRequest(instructions="Use bold headings"))

    prompt = assistant.calls[0][1]
    assert "REVISION INSTRUCTIONS" not in prompt
    assert "=== ADDITIONAL INSTRUCTIONS ===\nUse bold headings" in prompt
    assert result.revised is False


@pytest.mark.asyncio
async def test_customer_documents_enrich_the_prompt(compiler, store, templates_root, assistant):
    await _setup(store, templates_root)
    await store.put_customer(make_customer(7))
    await store.put_document(make_document(7, filename="orders-q3.xlsx"))
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    await _compile(compiler, CompileRequest(customer_id=7))

    prompt = assistant.calls[0][1]
    assert "=== RELEVANT WORKSPACE DOCUMENTS ===" in prompt
    assert "orders-q3.xlsx" in prompt


@pytest.mark.asyncio
async def test_metadata_context_failure_is_not_fatal(compiler, store, templates_root, assistant, monkeypatch):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    async def _broken(customer_ids=None):
        raise RuntimeError("metadata database offline")

    monkeypatch.setattr(store, "list_documents", _broken)

    _, result = await _compile(compiler, CompileRequest(customer_id=7))

    assert result.artifact_ref
    assert "=== TEMPLATE CONTEXT ===" not in assistant.calls[0][1]


# ---------------------------------------------------------------------------
# Worker and progress events
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_worker_publishes_steps_then_done(compiler, store, templates_root, assistant, manager):
    await _setup(store, templates_root)
    assistant.default_reply = fenced(ORDERS_GENERATOR)

    job_id = await manager.create_job(JobKind.COMPILE, template_slugs=[SLUG])
    channel = progress_broker.open(job_id)
    queue = channel.subscribe()
    result = await manager.run_inline(job_id, compiler.worker(SLUG, CompileRequest()))
    events = [event async for event in channel.iterate(queue)]

    step_events = [e for e in events if e["type"] == "step"]
    assert [e["name"] for e in step_events if e["status"] == "start"] == STAGE_NAMES
    percents = [e["progress_percent"] for e in step_events]
    assert percents == sorted(percents)
    assert percents[-1] == 100

    assert events[-1] == {
        "type": "done",
        "artifact_ref": result["artifact_ref"],
        "used_context": "acme",
        "job_id": job_id,
    }
    assert (await manager.get_status(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_worker_publishes_error_and_fails_job(compiler, store, templates_root, manager):
    await _setup(store, templates_root, workspace=None)

    job_id = await manager.create_job(JobKind.COMPILE, template_slugs=[SLUG])
    channel = progress_broker.open(job_id)
    queue = channel.subscribe()
    with pytest.raises(NoContext):
        await manager.run_inline(job_id, compiler.worker(SLUG, CompileRequest()))
    events = [event async for event in channel.iterate(queue)]

    assert events[-1]["type"] == "error"
    assert "No assistant workspace" in events[-1]["error"]
    job = await manager.get_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.startswith("No assistant workspace")
