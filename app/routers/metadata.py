"""
Metadata store CRUD and document analysis.

Templates, documents and customers are written here by upstream ingestion
(template analysis, customer setup) and read by the matching and compile
pipelines.  ``POST /documents/analyze`` builds a document record from an
upload with the assistant and scores it against the known templates.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from app.config import settings
from app.dependencies.services import get_document_analyzer, get_metadata_store
from app.models.schemas import (
    CustomerInfo,
    DocumentAnalysisResponse,
    DocumentMetadata,
    TemplateMetadata,
)
from app.services.document_analyzer import DocumentAnalyzer
from app.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@router.get("/templates", response_model=List[TemplateMetadata])
async def list_templates(store: MetadataStore = Depends(get_metadata_store)):
    return await store.list_templates()


@router.get("/templates/{slug}", response_model=TemplateMetadata)
async def get_template(slug: str, store: MetadataStore = Depends(get_metadata_store)):
    meta = await store.get_template(slug)
    if meta is None:
        raise _not_found(f"Template '{slug}' not found.")
    return meta


@router.put("/templates/{slug}", response_model=TemplateMetadata)
async def put_template(
    slug: str,
    body: TemplateMetadata,
    store: MetadataStore = Depends(get_metadata_store),
):
    if body.template_slug != slug:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="template_slug in the body must match the URL.",
        )
    return await store.put_template(body)


@router.delete("/templates/{slug}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_template(slug: str, store: MetadataStore = Depends(get_metadata_store)) -> None:
    if not await store.delete_template(slug):
        raise _not_found(f"Template '{slug}' not found.")
    logger.info("Deleted template metadata %s", slug)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@router.get("/documents", response_model=List[DocumentMetadata])
async def list_documents(
    customer_id: Optional[List[int]] = Query(None),
    store: MetadataStore = Depends(get_metadata_store),
):
    return await store.list_documents(customer_id)


@router.post(
    "/documents/analyze",
    response_model=DocumentAnalysisResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Analyze an uploaded document and score it",
)
async def analyze_document(
    customer_id: int = Form(...),
    file: UploadFile = File(...),
    analyzer: DocumentAnalyzer = Depends(get_document_analyzer),
) -> DocumentAnalysisResponse:
    """
    Build the metadata record for an uploaded document, then score it
    against every template.

    The file itself is expected in the customer's assistant workspace
    already; the upload is read for spreadsheet structure and text excerpts.
    A scoring failure leaves the record saved and is reported in
    ``scoring_error``.
    """
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Upload must include a filename.",
        )
    data = await file.read(settings.MAX_DOCUMENT_SIZE + 1)
    if len(data) > settings.MAX_DOCUMENT_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.MAX_DOCUMENT_SIZE // (1024 * 1024)} MB size limit.",
        )
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty.",
        )

    result = await analyzer.analyze(customer_id, Path(file.filename).name, data)
    if result.scoring_error:
        logger.warning("Document %s saved without scores: %s", result.document.id, result.scoring_error)
    return result


@router.get("/documents/{document_id}", response_model=DocumentMetadata)
async def get_document(document_id: int, store: MetadataStore = Depends(get_metadata_store)):
    doc = await store.get_document(document_id)
    if doc is None:
        raise _not_found(f"Document {document_id} not found.")
    return doc


@router.post("/documents", response_model=DocumentMetadata, status_code=status.HTTP_201_CREATED)
async def put_document(body: DocumentMetadata, store: MetadataStore = Depends(get_metadata_store)):
    """Create a document record, or replace it when ``id`` is given."""
    if await store.get_customer(body.customer_id) is None:
        raise _not_found(f"Customer {body.customer_id} not found.")
    return await store.put_document(body)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_document(document_id: int, store: MetadataStore = Depends(get_metadata_store)) -> None:
    if not await store.delete_document(document_id):
        raise _not_found(f"Document {document_id} not found.")


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

@router.get("/customers", response_model=List[CustomerInfo])
async def list_customers(store: MetadataStore = Depends(get_metadata_store)):
    return await store.list_customers()


@router.get("/customers/{customer_id}", response_model=CustomerInfo)
async def get_customer(customer_id: int, store: MetadataStore = Depends(get_metadata_store)):
    customer = await store.get_customer(customer_id)
    if customer is None:
        raise _not_found(f"Customer {customer_id} not found.")
    return customer


@router.put("/customers/{customer_id}", response_model=CustomerInfo)
async def put_customer(
    customer_id: int,
    body: CustomerInfo,
    store: MetadataStore = Depends(get_metadata_store),
):
    if body.id != customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="id in the body must match the URL.",
        )
    return await store.put_customer(body)
