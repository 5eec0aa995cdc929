"""
Durable access to customer, template and document metadata.

``MetadataStore`` is the abstract get/put/query interface the pipeline
depends on.  Two implementations:

- ``SQLMetadataStore``    — SQLAlchemy async sessions (production)
- ``InMemoryMetadataStore`` — dict-backed, used by tests and local runs

Relevance merges and generation-stat updates are read-modify-write over a
whole record, serialised per key with an ``asyncio.Lock`` (and a row lock on
the SQL side) so concurrent matching jobs never lose an update.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import weakref
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.database_models import Customer, Document, Template
from app.models.schemas import CustomerInfo, DocumentMetadata, RelevanceEntry, TemplateMetadata
from app.services.exceptions import NotFound
from app.services.relevance import merge_relevance
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Generation durations kept per template
GENERATION_HISTORY = 20


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class MetadataStore(abc.ABC):
    """Abstract metadata store with per-key read-modify-write helpers."""

    def __init__(self) -> None:
        # Entries disappear once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[Tuple[str, Any], asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, kind: str, key: Any) -> asyncio.Lock:
        lock = self._locks.get((kind, key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(kind, key)] = lock
        return lock

    # -- customers ------------------------------------------------------

    @abc.abstractmethod
    async def get_customer(self, customer_id: int) -> Optional[CustomerInfo]: ...

    @abc.abstractmethod
    async def list_customers(self) -> List[CustomerInfo]: ...

    @abc.abstractmethod
    async def put_customer(self, customer: CustomerInfo) -> CustomerInfo: ...

    # -- templates ------------------------------------------------------

    @abc.abstractmethod
    async def get_template(self, slug: str) -> Optional[TemplateMetadata]: ...

    @abc.abstractmethod
    async def list_templates(self, slugs: Optional[Sequence[str]] = None) -> List[TemplateMetadata]:
        """All templates ordered by slug, or only *slugs* when given (unknown slugs are dropped)."""

    @abc.abstractmethod
    async def put_template(self, meta: TemplateMetadata) -> TemplateMetadata: ...

    @abc.abstractmethod
    async def delete_template(self, slug: str) -> bool: ...

    # -- documents ------------------------------------------------------

    @abc.abstractmethod
    async def get_document(self, document_id: int) -> Optional[DocumentMetadata]: ...

    @abc.abstractmethod
    async def list_documents(
        self, customer_ids: Optional[Sequence[int]] = None
    ) -> List[DocumentMetadata]:
        """Documents ordered by (customer_id, filename), optionally filtered by customer."""

    @abc.abstractmethod
    async def put_document(self, doc: DocumentMetadata) -> DocumentMetadata:
        """Insert or replace; assigns an id when ``doc.id`` is None."""

    @abc.abstractmethod
    async def delete_document(self, document_id: int) -> bool: ...

    async def ping(self) -> bool:
        return True

    # -- read-modify-write ----------------------------------------------

    async def update_document(
        self,
        document_id: int,
        mutate: Callable[[DocumentMetadata], DocumentMetadata],
    ) -> DocumentMetadata:
        async with self._lock_for("document", document_id):
            doc = await self.get_document(document_id)
            if doc is None:
                raise NotFound(f"Document {document_id} not found")
            return await self.put_document(mutate(doc))

    async def update_template(
        self,
        slug: str,
        mutate: Callable[[TemplateMetadata], TemplateMetadata],
    ) -> TemplateMetadata:
        async with self._lock_for("template", slug):
            meta = await self.get_template(slug)
            if meta is None:
                raise NotFound(f"Template '{slug}' not found")
            return await self.put_template(mutate(meta))

    async def merge_document_relevance(
        self, document_id: int, incoming: Sequence[RelevanceEntry]
    ) -> DocumentMetadata:
        """Merge *incoming* scores into the document's relevance list."""

        def _merge(doc: DocumentMetadata) -> DocumentMetadata:
            doc.template_relevance = merge_relevance(
                doc.template_relevance, incoming, limit=settings.MAX_RELEVANCE_ENTRIES
            )
            return doc

        return await self.update_document(document_id, _merge)

    async def record_generation(self, slug: str, duration_seconds: float) -> TemplateMetadata:
        """Append a generation duration and refresh the derived statistics."""

        def _record(meta: TemplateMetadata) -> TemplateMetadata:
            times = (meta.actual_generation_times + [round(duration_seconds, 3)])[-GENERATION_HISTORY:]
            meta.actual_generation_times = times
            meta.generation_count += 1
            meta.avg_generation_time = round(sum(times) / len(times), 3)
            meta.last_generated_at = utcnow()
            return meta

        return await self.update_template(slug, _record)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryMetadataStore(MetadataStore):
    """Dict-backed store.  Records are copied on the way in and out."""

    def __init__(self) -> None:
        super().__init__()
        self._customers: Dict[int, CustomerInfo] = {}
        self._templates: Dict[str, TemplateMetadata] = {}
        self._documents: Dict[int, DocumentMetadata] = {}
        self._next_document_id = 1

    async def get_customer(self, customer_id: int) -> Optional[CustomerInfo]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def list_customers(self) -> List[CustomerInfo]:
        return [self._customers[k].model_copy(deep=True) for k in sorted(self._customers)]

    async def put_customer(self, customer: CustomerInfo) -> CustomerInfo:
        self._customers[customer.id] = customer.model_copy(deep=True)
        return customer

    async def get_template(self, slug: str) -> Optional[TemplateMetadata]:
        meta = self._templates.get(slug)
        return meta.model_copy(deep=True) if meta else None

    async def list_templates(self, slugs: Optional[Sequence[str]] = None) -> List[TemplateMetadata]:
        keys = sorted(self._templates) if slugs is None else [s for s in slugs if s in self._templates]
        return [self._templates[k].model_copy(deep=True) for k in keys]

    async def put_template(self, meta: TemplateMetadata) -> TemplateMetadata:
        self._templates[meta.template_slug] = meta.model_copy(deep=True)
        return meta

    async def delete_template(self, slug: str) -> bool:
        return self._templates.pop(slug, None) is not None

    async def get_document(self, document_id: int) -> Optional[DocumentMetadata]:
        doc = self._documents.get(document_id)
        return doc.model_copy(deep=True) if doc else None

    async def list_documents(
        self, customer_ids: Optional[Sequence[int]] = None
    ) -> List[DocumentMetadata]:
        wanted = set(customer_ids) if customer_ids is not None else None
        docs = [
            d for d in self._documents.values()
            if wanted is None or d.customer_id in wanted
        ]
        docs.sort(key=lambda d: (d.customer_id, d.filename))
        return [d.model_copy(deep=True) for d in docs]

    async def put_document(self, doc: DocumentMetadata) -> DocumentMetadata:
        if doc.id is None:
            doc = doc.model_copy(update={"id": self._next_document_id})
        self._next_document_id = max(self._next_document_id, doc.id + 1)
        self._documents[doc.id] = doc.model_copy(deep=True)
        return doc

    async def delete_document(self, document_id: int) -> bool:
        return self._documents.pop(document_id, None) is not None


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SQLMetadataStore(MetadataStore):
    """Store backed by the ORM tables in ``app.models.database_models``."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        super().__init__()
        self._session_factory = session_factory

    # -- conversions ----------------------------------------------------

    @staticmethod
    def _template_from_row(row: Template) -> TemplateMetadata:
        data = dict(row.metadata_json or {})
        data.update(template_slug=row.slug, template_name=row.name, workspace_slug=row.workspace_slug)
        return TemplateMetadata.model_validate(data)

    @staticmethod
    def _document_from_row(row: Document) -> DocumentMetadata:
        data = dict(row.metadata_json or {})
        data.update(
            id=row.id,
            customer_id=row.customer_id,
            filename=row.filename,
            template_relevance=row.template_relevance or [],
        )
        return DocumentMetadata.model_validate(data)

    @staticmethod
    def _document_payload(doc: DocumentMetadata) -> Dict[str, Any]:
        return doc.model_dump(
            mode="json", exclude={"id", "customer_id", "filename", "template_relevance"}
        )

    # -- customers ------------------------------------------------------

    async def get_customer(self, customer_id: int) -> Optional[CustomerInfo]:
        async with self._session_factory() as session:
            row = await session.get(Customer, customer_id)
            return CustomerInfo.model_validate(row) if row else None

    async def list_customers(self) -> List[CustomerInfo]:
        async with self._session_factory() as session:
            result = await session.execute(select(Customer).order_by(Customer.id))
            return [CustomerInfo.model_validate(r) for r in result.scalars().all()]

    async def put_customer(self, customer: CustomerInfo) -> CustomerInfo:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(Customer, customer.id)
                if row is None:
                    row = Customer(id=customer.id)
                    session.add(row)
                row.name = customer.name
                row.workspace_slug = customer.workspace_slug
        return customer

    # -- templates ------------------------------------------------------

    async def get_template(self, slug: str) -> Optional[TemplateMetadata]:
        async with self._session_factory() as session:
            row = await session.get(Template, slug)
            return self._template_from_row(row) if row else None

    async def list_templates(self, slugs: Optional[Sequence[str]] = None) -> List[TemplateMetadata]:
        stmt = select(Template).order_by(Template.slug)
        if slugs is not None:
            stmt = stmt.where(Template.slug.in_(list(slugs)))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        by_slug = {r.slug: self._template_from_row(r) for r in rows}
        if slugs is None:
            return list(by_slug.values())
        return [by_slug[s] for s in slugs if s in by_slug]

    async def put_template(self, meta: TemplateMetadata) -> TemplateMetadata:
        async with self._session_factory() as session:
            async with session.begin():
                await self._write_template(session, meta)
        return meta

    @staticmethod
    async def _write_template(session: AsyncSession, meta: TemplateMetadata) -> None:
        row = await session.get(Template, meta.template_slug)
        if row is None:
            row = Template(slug=meta.template_slug)
            session.add(row)
        row.name = meta.template_name or meta.template_slug
        row.workspace_slug = meta.workspace_slug
        row.metadata_json = meta.model_dump(
            mode="json", exclude={"template_slug", "template_name", "workspace_slug"}
        )

    async def delete_template(self, slug: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(Template).where(Template.slug == slug))
        return bool(result.rowcount)

    # -- documents ------------------------------------------------------

    async def get_document(self, document_id: int) -> Optional[DocumentMetadata]:
        async with self._session_factory() as session:
            row = await session.get(Document, document_id)
            return self._document_from_row(row) if row else None

    async def list_documents(
        self, customer_ids: Optional[Sequence[int]] = None
    ) -> List[DocumentMetadata]:
        stmt = select(Document).order_by(Document.customer_id, Document.filename)
        if customer_ids is not None:
            stmt = stmt.where(Document.customer_id.in_(list(customer_ids)))
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._document_from_row(r) for r in rows]

    async def put_document(self, doc: DocumentMetadata) -> DocumentMetadata:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(Document, doc.id) if doc.id is not None else None
                if row is None:
                    row = Document(id=doc.id)
                    session.add(row)
                row.customer_id = doc.customer_id
                row.filename = doc.filename
                row.metadata_json = self._document_payload(doc)
                row.template_relevance = [e.model_dump(mode="json") for e in doc.template_relevance]
                await session.flush()
                doc_id = row.id
        return doc.model_copy(update={"id": doc_id})

    async def delete_document(self, document_id: int) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(Document).where(Document.id == document_id))
        return bool(result.rowcount)

    async def update_document(
        self,
        document_id: int,
        mutate: Callable[[DocumentMetadata], DocumentMetadata],
    ) -> DocumentMetadata:
        # Row lock keeps the merge atomic across processes as well
        async with self._lock_for("document", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    row = (
                        await session.execute(
                            select(Document).where(Document.id == document_id).with_for_update()
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFound(f"Document {document_id} not found")
                    doc = mutate(self._document_from_row(row))
                    row.metadata_json = self._document_payload(doc)
                    row.template_relevance = [e.model_dump(mode="json") for e in doc.template_relevance]
            return doc

    async def update_template(
        self,
        slug: str,
        mutate: Callable[[TemplateMetadata], TemplateMetadata],
    ) -> TemplateMetadata:
        async with self._lock_for("template", slug):
            async with self._session_factory() as session:
                async with session.begin():
                    row = (
                        await session.execute(
                            select(Template).where(Template.slug == slug).with_for_update()
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        raise NotFound(f"Template '{slug}' not found")
                    meta = mutate(self._template_from_row(row))
                    await self._write_template(session, meta)
            return meta

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(select(1))
            return True
        except Exception as exc:
            logger.error("Metadata store ping failed: %s", exc)
            return False
