"""
Pydantic schemas for metadata records and request/response validation.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# Enums
class JobStatusSchema(str, Enum):
    """Job lifecycle states for API responses."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKindSchema(str, Enum):
    """Kinds of background work tracked by the job manager."""

    MATCHING = "matching"
    COMPILE = "compile"


# Metadata records
class RelevanceEntry(BaseModel):
    """One document-to-template compatibility score."""

    template_slug: str
    template_name: str = ""
    score: float = Field(0.0, ge=0.0, le=10.0)
    reasoning: str = ""


class TemplateMetadata(BaseModel):
    """Inferred characteristics of one template, keyed by slug."""

    template_slug: str = Field(..., min_length=1, max_length=255)
    template_name: str = ""
    template_type: Optional[str] = None
    purpose: Optional[str] = None
    output_format: Optional[str] = None
    required_data_types: List[str] = Field(default_factory=list)
    expected_entities: List[str] = Field(default_factory=list)
    data_structure_needs: List[str] = Field(default_factory=list)
    compatible_document_types: List[str] = Field(default_factory=list)
    has_sections: List[str] = Field(default_factory=list)
    has_tables: bool = False
    has_charts: bool = False
    has_formulas: bool = False
    table_count: int = 0
    requires_aggregation: bool = False
    requires_time_series: bool = False
    requires_comparisons: bool = False
    requires_filtering: bool = False
    complexity: Optional[str] = None
    target_audience: Optional[str] = None
    use_cases: List[str] = Field(default_factory=list)
    workspace_slug: Optional[str] = None
    last_analyzed: Optional[datetime] = None
    analysis_version: int = 1

    # Generation statistics
    generation_count: int = 0
    actual_generation_times: List[float] = Field(default_factory=list)
    avg_generation_time: Optional[float] = None
    last_generated_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


class DocumentMetadata(BaseModel):
    """Inferred characteristics of one uploaded customer document."""

    id: Optional[int] = None
    customer_id: int
    filename: str = Field(..., min_length=1, max_length=512)
    document_type: Optional[str] = None
    purpose: Optional[str] = None
    key_topics: List[str] = Field(default_factory=list)
    data_categories: List[str] = Field(default_factory=list)
    stakeholders: List[str] = Field(default_factory=list)
    mentioned_systems: List[str] = Field(default_factory=list)
    has_tables: bool = False
    date_range: Optional[str] = None
    meeting_date: Optional[str] = None
    # metrics, primary_entities, departments, has_aggregations, timeframe, ...
    extra_fields: Dict[str, Any] = Field(default_factory=dict)
    template_relevance: List[RelevanceEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class DocumentAnalysisResponse(BaseModel):
    """Saved analysis plus the outcome of scoring it against the templates."""

    document: DocumentMetadata
    scored_templates: int = 0
    scoring_error: Optional[str] = None
    message: str = "Document analyzed successfully"


class CustomerInfo(BaseModel):
    """Customer record as seen by the pipeline."""

    id: int
    name: str = Field(..., min_length=1, max_length=255)
    workspace_slug: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Matching job schemas
class MatchingJobCreate(BaseModel):
    """Request body for starting a template matching job."""

    template_slugs: Optional[List[str]] = Field(None, min_length=1)
    customer_ids: Optional[List[int]] = Field(None, min_length=1)
    force_recalculate: bool = False
    created_by: Optional[str] = None


class JobCreatedResponse(BaseModel):
    """Returned immediately after a job is registered."""

    job_id: str
    status: JobStatusSchema = JobStatusSchema.PENDING
    message: str = "Job started"


class JobStepResponse(BaseModel):
    name: str
    status: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class JobResponse(BaseModel):
    """Full job record."""

    id: str
    kind: JobKindSchema
    status: JobStatusSchema
    template_slugs: Optional[List[str]] = None
    customer_ids: Optional[List[int]] = None
    force_recalculate: bool = False
    total_units: int = 0
    processed_units: int = 0
    matched_units: int = 0
    skipped_units: int = 0
    failed_units: int = 0
    partial: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    elapsed_seconds: Optional[float] = None
    error: Optional[str] = None
    created_by: Optional[str] = None
    steps: List[JobStepResponse] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    result: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class JobCancelResponse(BaseModel):
    cancelled: bool


class JobClearResponse(BaseModel):
    cleared_count: int


# Template compile schemas
class CompileRequest(BaseModel):
    """Options for compiling a template into a generator."""

    instructions: Optional[str] = Field(
        None, description="Revision instructions; take priority over a fresh compile."
    )
    workspace_slug: Optional[str] = Field(
        None, description="Explicit assistant workspace to compile with."
    )
    customer_id: Optional[int] = Field(
        None, description="Customer whose documents enrich the compile prompt."
    )
    context_specific: bool = Field(
        False, description="Write a generator bound to the resolved workspace only."
    )


class CompileResponse(BaseModel):
    slug: str
    job_id: str
    artifact_ref: str
    used_context: str
    revised: bool = False
    message: str = "Template compiled successfully"


class AnalyzeRequest(BaseModel):
    workspace_slug: Optional[str] = None
    template_name: Optional[str] = None


class TemplateUploadResponse(BaseModel):
    slug: str
    filename: str
    file_size: int
    output_format: str
    has_generator: bool = False
    message: str = "Template uploaded successfully"


# Generation schemas
class GenerateRequest(BaseModel):
    """Run a compiled generator for one customer."""

    template_slug: str = Field(..., min_length=1)
    customer_id: int
    context: Dict[str, Any] = Field(default_factory=dict)


class GenerateResponse(BaseModel):
    template_slug: str
    customer_id: int
    output_format: str
    used_context: Optional[str] = None
    output: Dict[str, Any]
    duration_seconds: float


# Health Check Schema
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    database: str
    assistant: str
    timestamp: datetime
