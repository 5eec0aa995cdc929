"""Database and schema models for DocForge."""
from app.models.database_models import (
    Customer,
    Template,
    Document,
)
from app.models.schemas import (
    RelevanceEntry,
    TemplateMetadata,
    DocumentMetadata,
    CustomerInfo,
    MatchingJobCreate,
    JobResponse,
    CompileRequest,
    CompileResponse,
    GenerateRequest,
    GenerateResponse,
    HealthCheckResponse,
)

__all__ = [
    # Database models
    "Customer",
    "Template",
    "Document",
    # Pydantic schemas
    "RelevanceEntry",
    "TemplateMetadata",
    "DocumentMetadata",
    "CustomerInfo",
    "MatchingJobCreate",
    "JobResponse",
    "CompileRequest",
    "CompileResponse",
    "GenerateRequest",
    "GenerateResponse",
    "HealthCheckResponse",
]
