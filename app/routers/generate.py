"""
Document generation endpoint.

POST / — run a compiled template generator for one customer.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.dependencies.services import get_generation_service
from app.models.schemas import GenerateRequest, GenerateResponse
from app.services.generation import GenerationService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=GenerateResponse, summary="Generate a document from a compiled template")
async def generate_document(
    body: GenerateRequest,
    service: GenerationService = Depends(get_generation_service),
) -> GenerateResponse:
    """
    Execute the template's generator against the customer's workspace.

    Returns the structured output (document blocks or spreadsheet
    operations).  A generator that fails or produces nothing is a 422;
    nothing partial is ever returned.
    """
    result = await service.generate(body.template_slug, body.customer_id, body.context)
    return GenerateResponse(
        template_slug=result.template_slug,
        customer_id=result.customer_id,
        output_format=result.output_format,
        used_context=result.used_context,
        output=result.output.model_dump(mode="json"),
        duration_seconds=result.duration_seconds,
    )
