"""
Template matching job worker.

Scores every document in scope against every template in scope and stores
the merged results on the document.  Documents are processed in fixed-size
batches; units inside a batch run concurrently, and cancellation is checked
before each batch starts.

Public API
----------
MatchingService.run(job, token)   — JobWorker for JobKind.MATCHING
MatchingService.start(...)        — create + start a matching job
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Dict, List, Optional, Sequence

from app.config import settings
from app.models.schemas import DocumentMetadata, TemplateMetadata
from app.services.exceptions import NotFound, PartialUnitFailure
from app.services.job_manager import CancellationToken, Job, JobKind, JobManager
from app.services.metadata_store import MetadataStore
from app.services.relevance import RelevanceScorer, templates_to_calculate

logger = logging.getLogger(__name__)


class UnitOutcome(str, enum.Enum):
    MATCHED = "matched"
    SKIPPED = "skipped"
    FAILED = "failed"


class MatchingService:
    """Runs matching jobs against a metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        scorer: RelevanceScorer,
        manager: JobManager,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.scorer = scorer
        self.manager = manager
        self.batch_size = batch_size or settings.MATCHING_BATCH_SIZE
        self.batch_delay = settings.MATCHING_BATCH_DELAY if batch_delay is None else batch_delay

    async def start(
        self,
        template_slugs: Optional[Sequence[str]] = None,
        customer_ids: Optional[Sequence[int]] = None,
        force_recalculate: bool = False,
        created_by: Optional[str] = None,
    ) -> str:
        job_id = await self.manager.create_job(
            JobKind.MATCHING,
            template_slugs=template_slugs,
            customer_ids=customer_ids,
            force_recalculate=force_recalculate,
            created_by=created_by,
        )
        self.manager.start_in_background(job_id, self.run)
        return job_id

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def run(self, job: Job, token: CancellationToken) -> Dict[str, int]:
        templates = await self.store.list_templates(job.template_slugs)
        if not templates:
            raise NotFound("No templates available for matching")

        documents = await self.store.list_documents(job.customer_ids)
        await self.manager.update(job.id, total_units=len(documents))
        logger.info(
            "Matching %s: %d document(s) x %d template(s), force=%s",
            job.id,
            len(documents),
            len(templates),
            job.force_recalculate,
        )
        await self.manager.log(
            job.id, f"Matching {len(documents)} document(s) against {len(templates)} template(s)"
        )

        workspaces = await self._workspaces_for(documents)

        totals = {outcome: 0 for outcome in UnitOutcome}
        batches = [
            documents[i:i + self.batch_size] for i in range(0, len(documents), self.batch_size)
        ]
        for index, batch in enumerate(batches, start=1):
            token.raise_if_cancelled()
            logger.info("Matching %s: [batch %d/%d] %d document(s)", job.id, index, len(batches), len(batch))

            outcomes = await asyncio.gather(*(
                self._process_unit(job, doc, templates, workspaces.get(doc.customer_id))
                for doc in batch
            ))
            for outcome in outcomes:
                totals[outcome] += 1

            if index < len(batches) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        await self.manager.log(
            job.id,
            f"Done: matched={totals[UnitOutcome.MATCHED]} skipped={totals[UnitOutcome.SKIPPED]} "
            f"failed={totals[UnitOutcome.FAILED]}",
        )
        return {outcome.value: count for outcome, count in totals.items()}

    async def _process_unit(
        self,
        job: Job,
        doc: DocumentMetadata,
        templates: List[TemplateMetadata],
        workspace_slug: Optional[str],
    ) -> UnitOutcome:
        outcome = UnitOutcome.FAILED
        try:
            pending = templates_to_calculate(doc, templates, job.force_recalculate)
            if not pending:
                outcome = UnitOutcome.SKIPPED
            else:
                entries = await self.scorer.score(doc, pending, workspace_slug)
                await self.store.merge_document_relevance(doc.id, entries)
                outcome = UnitOutcome.MATCHED
        except Exception as exc:
            failure = PartialUnitFailure(
                f"Scoring failed for document {doc.id} ({doc.filename}): {exc}", unit_id=doc.id
            )
            logger.error("Matching %s: %s", job.id, failure.message, exc_info=True)
            await self.manager.log(job.id, failure.message)

        await self.manager.increment(
            job.id,
            processed_units=1,
            matched_units=int(outcome == UnitOutcome.MATCHED),
            skipped_units=int(outcome == UnitOutcome.SKIPPED),
            failed_units=int(outcome == UnitOutcome.FAILED),
        )
        return outcome

    async def _workspaces_for(self, documents: Sequence[DocumentMetadata]) -> Dict[int, Optional[str]]:
        workspaces: Dict[int, Optional[str]] = {}
        for customer_id in sorted({d.customer_id for d in documents}):
            customer = await self.store.get_customer(customer_id)
            workspaces[customer_id] = customer.workspace_slug if customer else None
        return workspaces
