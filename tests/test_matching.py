"""Tests for the template matching job worker."""
import json

import pytest

from app.config import settings
from app.services.exceptions import UpstreamUnavailable
from app.services.job_manager import JobKind, JobManager, JobStatus
from app.services.matching import MatchingService
from app.services.metadata_store import InMemoryMetadataStore
from app.services.relevance import RelevanceScorer
from tests.fakes import FakeAssistant, make_customer, make_document, make_template


async def _seed(store: InMemoryMetadataStore, documents: int = 3, customer_id: int = 7, workspace=None):
    await store.put_customer(make_customer(customer_id, workspace_slug=workspace))
    for i in range(documents):
        await store.put_document(make_document(customer_id, filename=f"doc-{i:02d}.xlsx"))


async def _seed_templates(store: InMemoryMetadataStore, *slugs: str):
    for slug in slugs or ("alpha", "beta"):
        await store.put_template(make_template(slug))


def _service(store, manager, assistant=None, **kwargs) -> MatchingService:
    return MatchingService(store, RelevanceScorer(assistant), manager, batch_delay=0, **kwargs)


async def _run(service: MatchingService, **scope):
    job_id = await service.start(**scope)
    return await service.manager.wait(job_id)


@pytest.mark.asyncio
async def test_first_run_matches_every_document(store, manager):
    await _seed(store, documents=3)
    await _seed(store, documents=2, customer_id=8)
    await _seed_templates(store)

    job = await _run(_service(store, manager), customer_ids=[7])

    assert job.status == JobStatus.COMPLETED
    assert job.total_units == 3
    assert job.matched_units == 3
    assert job.skipped_units == 0
    assert job.processed_units == 3
    assert job.result == {"matched": 3, "skipped": 0, "failed": 0}

    for doc in await store.list_documents([7]):
        assert [e.template_slug for e in doc.template_relevance] == ["alpha", "beta"]
    for doc in await store.list_documents([8]):
        assert doc.template_relevance == []


@pytest.mark.asyncio
async def test_second_run_skips_scored_pairs(store, manager):
    await _seed(store, documents=3)
    await _seed_templates(store)
    service = _service(store, manager)

    await _run(service, customer_ids=[7])
    job = await _run(service, customer_ids=[7], force_recalculate=False)

    assert job.status == JobStatus.COMPLETED
    assert job.skipped_units == job.total_units == 3
    assert job.matched_units == 0


@pytest.mark.asyncio
async def test_force_recalculate_rescores(store, manager):
    await _seed(store, documents=2)
    await _seed_templates(store)
    service = _service(store, manager)

    await _run(service)
    job = await _run(service, force_recalculate=True)
    assert job.matched_units == 2
    assert job.skipped_units == 0


@pytest.mark.asyncio
async def test_new_template_is_scored_for_already_matched_documents(store, manager):
    await _seed(store, documents=2)
    await _seed_templates(store, "alpha")
    service = _service(store, manager)
    await _run(service)

    await store.put_template(make_template("gamma"))
    job = await _run(service)

    assert job.matched_units == 2
    for doc in await store.list_documents():
        assert {e.template_slug for e in doc.template_relevance} == {"alpha", "gamma"}


@pytest.mark.asyncio
async def test_template_scope_limits_scoring(store, manager):
    await _seed(store, documents=1)
    await _seed_templates(store, "alpha", "beta")

    await _run(_service(store, manager), template_slugs=["beta"])

    doc = (await store.list_documents())[0]
    assert [e.template_slug for e in doc.template_relevance] == ["beta"]


@pytest.mark.asyncio
async def test_no_templates_fails_the_job(store, manager):
    await _seed(store, documents=2)
    job = await _run(_service(store, manager))

    assert job.status == JobStatus.FAILED
    assert job.error == "No templates available for matching"


@pytest.mark.asyncio
async def test_no_documents_completes_empty(store, manager):
    await _seed_templates(store)
    job = await _run(_service(store, manager), customer_ids=[42])

    assert job.status == JobStatus.COMPLETED
    assert job.total_units == 0
    assert job.processed_units == 0


class _FlakyScorer(RelevanceScorer):
    """Fails for one filename, rule-based for the rest."""

    def __init__(self, bad_filename: str) -> None:
        super().__init__(None)
        self.bad_filename = bad_filename

    async def score(self, document, templates, workspace_slug=None):
        if document.filename == self.bad_filename:
            raise RuntimeError("scorer crashed")
        return await super().score(document, templates, workspace_slug)


@pytest.mark.asyncio
async def test_unit_failure_is_partial_not_fatal(store, manager):
    await _seed(store, documents=3)
    await _seed_templates(store)
    service = MatchingService(store, _FlakyScorer("doc-01.xlsx"), manager, batch_delay=0)

    job = await _run(service)

    assert job.status == JobStatus.COMPLETED
    assert job.partial is True
    assert (job.processed_units, job.matched_units, job.failed_units) == (3, 2, 1)
    assert any("doc-01.xlsx" in line for line in job.logs)


class _CancellingScorer(RelevanceScorer):
    """Requests cancellation of its own job on the first call."""

    def __init__(self, manager: JobManager) -> None:
        super().__init__(None)
        self.manager = manager
        self.job_id = None

    async def score(self, document, templates, workspace_slug=None):
        if self.job_id is not None:
            await self.manager.cancel(self.job_id)
            self.job_id = None
        return await super().score(document, templates, workspace_slug)


@pytest.mark.asyncio
async def test_cancellation_stops_at_batch_boundary(store, manager):
    await _seed(store, documents=25)
    await _seed_templates(store)
    scorer = _CancellingScorer(manager)
    service = MatchingService(store, scorer, manager, batch_size=10, batch_delay=0)

    job_id = await manager.create_job(JobKind.MATCHING)
    scorer.job_id = job_id
    manager.start_in_background(job_id, service.run)
    job = await manager.wait(job_id)

    assert job.status == JobStatus.CANCELLED
    # The in-flight batch finishes; no later batch starts
    assert job.processed_units == 10
    assert job.total_units == 25
    assert job.processed_units < job.total_units


@pytest.mark.asyncio
async def test_assistant_scores_used_for_customers_with_workspace(store, manager):
    await _seed(store, documents=1, workspace="acme")
    await _seed_templates(store, "alpha")
    assistant = FakeAssistant(
        default_reply=json.dumps([{"templateSlug": "alpha", "score": 8.8, "reasoning": "good fit"}])
    )

    job = await _run(_service(store, manager, assistant))

    assert job.status == JobStatus.COMPLETED
    entry = (await store.list_documents())[0].template_relevance[0]
    assert (entry.score, entry.reasoning) == (8.8, "good fit")
    assert assistant.calls[0][0] == "acme"


@pytest.mark.asyncio
async def test_assistant_outage_falls_back_to_rules(store, manager):
    await _seed(store, documents=2, workspace="acme")
    await _seed_templates(store, "alpha")
    assistant = FakeAssistant(responder=lambda ws, msg: UpstreamUnavailable("down"))

    job = await _run(_service(store, manager, assistant))

    assert job.status == JobStatus.COMPLETED
    assert job.matched_units == 2
    assert job.failed_units == 0
    for doc in await store.list_documents():
        assert doc.template_relevance[0].score == 7.5


@pytest.mark.asyncio
async def test_relevance_list_is_capped(store, manager, monkeypatch):
    monkeypatch.setattr(settings, "MAX_RELEVANCE_ENTRIES", 3)
    await _seed(store, documents=1)
    await _seed_templates(store, "a", "b", "c", "d", "e")

    await _run(_service(store, manager))

    doc = (await store.list_documents())[0]
    assert len(doc.template_relevance) == 3
