"""Canonical data models for purchase-order extraction."""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

UNKNOWN = "unknown"

_NUMBER_CLEANUP = re.compile(r"[^\d.\-]")
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _coerce_number(value: Any) -> Optional[float]:
    """Turn model output such as "$1,234.50" or 12 into a float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = _NUMBER_CLEANUP.sub("", value)
        if cleaned in ("", "-", ".", "-."):
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _coerce_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _snake_key(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


class UploadStatus(str, Enum):
    """Upload lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    """Workflow execution states."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStage(str, Enum):
    """Persisted workflow stages, declared in their required order."""
    QUEUED = "queued"
    DOWNLOADING_FILE = "downloading_file"
    PREPARING_WORKFLOW = "preparing_workflow"
    ANALYZING = "analyzing"
    PARSING_FILE = "parsing_file"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position along the stage order; failed sits outside it."""
        return STAGE_ORDER.index(self) if self in STAGE_ORDER else len(STAGE_ORDER)

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStage.COMPLETED, WorkflowStage.FAILED)


STAGE_ORDER: Tuple[WorkflowStage, ...] = (
    WorkflowStage.QUEUED,
    WorkflowStage.DOWNLOADING_FILE,
    WorkflowStage.PREPARING_WORKFLOW,
    WorkflowStage.ANALYZING,
    WorkflowStage.PARSING_FILE,
    WorkflowStage.COMPLETED,
)


class ConfidenceSource(str, Enum):
    """Where an extraction confidence score came from."""
    MODEL = "model"
    HEURISTIC = "heuristic"
    NONE = "none"


class ReviewStatus(str, Enum):
    """Threshold-based escalation outcome for an aggregated document."""
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    REJECTED = "rejected"


class SchemaName(str, Enum):
    """Function schemas offered to the extraction model."""
    PURCHASE_ORDER = "extract_purchase_order"
    LINE_ITEMS = "extract_po_line_items"


# ---------------------------------------------------------------------------
# Extraction payloads
# ---------------------------------------------------------------------------

class LineItem(BaseModel):
    """One purchase-order line."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sku: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("sku", "productCode", "product_code", "itemCode"),
        description="Supplier SKU or product code"
    )
    description: Optional[str] = Field(None, description="Line description")
    quantity: Optional[float] = Field(None, description="Ordered quantity")
    unit_price: Optional[float] = Field(
        None,
        validation_alias=AliasChoices("unit_price", "unitPrice", "price"),
        description="Price per unit"
    )
    total: Optional[float] = Field(
        None,
        validation_alias=AliasChoices("total", "lineTotal", "amount"),
        description="Extended line total"
    )
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="Item-level confidence")

    @field_validator("sku", "description", mode="before")
    @classmethod
    def clean_text(cls, v):
        return _coerce_text(v)

    @field_validator("quantity", "unit_price", "total", mode="before")
    @classmethod
    def clean_number(cls, v):
        return _coerce_number(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def clean_confidence(cls, v):
        number = _coerce_number(v)
        if number is None:
            return None
        if number > 1:
            number = number / 100
        return number if 0.0 <= number <= 1.0 else None


class SupplierInfo(BaseModel):
    """Supplier block of a purchase order."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("name", "address", "email", "phone", mode="before")
    @classmethod
    def clean_text(cls, v):
        return _coerce_text(v)


class ExtractedData(BaseModel):
    """Structured purchase-order content returned by the model."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    po_number: Optional[str] = Field(None, description="Purchase order number")
    supplier: SupplierInfo = Field(default_factory=SupplierInfo)
    line_items: List[LineItem] = Field(default_factory=list)
    dates: Dict[str, Optional[str]] = Field(default_factory=dict)
    totals: Dict[str, Optional[float]] = Field(default_factory=dict)
    notes: Optional[str] = None

    @field_validator("po_number", "notes", mode="before")
    @classmethod
    def clean_text(cls, v):
        return _coerce_text(v)

    @field_validator("supplier", mode="before")
    @classmethod
    def supplier_from_string(cls, v):
        if v is None:
            return {}
        if isinstance(v, str):
            return {"name": v}
        return v

    @field_validator("line_items", mode="before")
    @classmethod
    def line_items_list(cls, v):
        if v is None:
            return []
        if isinstance(v, list):
            return [item for item in v if isinstance(item, (dict, LineItem))]
        return v

    @field_validator("dates", mode="before")
    @classmethod
    def normalize_dates(cls, v):
        if not isinstance(v, dict):
            return {}
        return {_snake_key(str(k)): _coerce_text(val) for k, val in v.items()}

    @field_validator("totals", mode="before")
    @classmethod
    def normalize_totals(cls, v):
        if not isinstance(v, dict):
            return {}
        return {_snake_key(str(k)): _coerce_number(val) for k, val in v.items()}


class QualityIndicators(BaseModel):
    """Model self-assessment of the source document."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    image_clarity: str = Field(default=UNKNOWN)
    text_legibility: str = Field(default=UNKNOWN)
    document_completeness: str = Field(default=UNKNOWN)

    @field_validator("image_clarity", "text_legibility", mode="before")
    @classmethod
    def normalize_level(cls, v):
        value = str(v).strip().lower() if v is not None else ""
        return value if value in ("high", "medium", "low") else UNKNOWN

    @field_validator("document_completeness", mode="before")
    @classmethod
    def normalize_completeness(cls, v):
        value = str(v).strip().lower() if v is not None else ""
        return value if value in ("complete", "partial", "incomplete") else UNKNOWN


class ExtractionResult(BaseModel):
    """Result of one extraction call (whole document or one chunk)."""
    confidence: float = Field(..., ge=0.0, le=1.0, description="Overall confidence for this call")
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    field_confidences: Dict[str, float] = Field(default_factory=dict)
    quality_indicators: QualityIndicators = Field(default_factory=QualityIndicators)
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    # Processing metadata
    chunk_index: int = Field(default=0, ge=0)
    estimated_tokens: int = Field(default=0, ge=0)
    schema_name: str = Field(default=SchemaName.PURCHASE_ORDER.value)
    confidence_source: ConfidenceSource = Field(default=ConfidenceSource.NONE)
    completeness_score: float = Field(default=0.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failed(
        cls,
        schema_name: str,
        issue: str,
        chunk_index: int = 0,
        estimated_tokens: int = 0,
        suggestions: Optional[List[str]] = None
    ) -> "ExtractionResult":
        """Zero-confidence result used when the model payload is unusable."""
        return cls(
            confidence=0.0,
            issues=[issue],
            suggestions=suggestions or [],
            chunk_index=chunk_index,
            estimated_tokens=estimated_tokens,
            schema_name=schema_name,
            confidence_source=ConfidenceSource.NONE,
            metadata={"malformed": True},
        )

    @property
    def is_malformed(self) -> bool:
        return bool(self.metadata.get("malformed"))


class AggregatedResult(BaseModel):
    """Document-level merge of every extraction result."""
    confidence: float = Field(..., ge=0.0, le=1.0)
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    field_confidences: Dict[str, float] = Field(default_factory=dict)
    quality_indicators: QualityIndicators = Field(default_factory=QualityIndicators)
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    chunk_count: int = Field(default=0, ge=0)
    duplicates_removed: int = Field(default=0, ge=0)
    review_status: ReviewStatus = Field(default=ReviewStatus.MANUAL_REVIEW)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def line_item_count(self) -> int:
        return len(self.extracted_data.line_items)


# ---------------------------------------------------------------------------
# Preprocessing and chunking
# ---------------------------------------------------------------------------

class PreprocessOptions(BaseModel):
    """Switches for the text preprocessing pipeline."""
    remove_artifacts: bool = True
    normalize_whitespace: bool = True
    compress_patterns: bool = True
    compress_tables: bool = True
    use_anchor_extraction: bool = False
    vendor_key: Optional[str] = Field(None, description="Vendor artifact set to strip")
    pattern_set: Optional[str] = Field(None, description="Registered anchor pattern set")


class AnchorSnippet(BaseModel):
    """Text window captured around one anchor match."""
    anchor_id: str
    label: str
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    snippet: str


class AnchorExtraction(BaseModel):
    """Outcome of anchor-based prompt shortening."""
    applied: bool = False
    combined_text: str = ""
    snippets: List[AnchorSnippet] = Field(default_factory=list)
    original_length: int = 0
    reduced_length: int = 0
    reduction_percent: float = 0.0
    anchors_matched: Dict[str, int] = Field(default_factory=dict)


class PreprocessResult(BaseModel):
    """Normalized text plus preprocessing statistics."""
    text: str
    original_length: int = Field(..., ge=0)
    optimized_length: int = Field(..., ge=0)
    reduction_percent: float
    estimated_token_savings: int = 0
    fallback_applied: bool = False
    fallback_reasons: List[str] = Field(default_factory=list)
    anchor_extraction: Optional[AnchorExtraction] = None


class ChunkingConfig(BaseModel):
    """Size bounds for chunk planning."""
    model_config = ConfigDict(frozen=True)

    max_chunk_chars: int = Field(default=3200, gt=0)
    min_chunk_chars: int = Field(default=800, ge=0)
    overlap_chars: int = Field(default=400, ge=0)
    max_chunks: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min_chunk_chars > self.max_chunk_chars:
            raise ValueError("min_chunk_chars must not exceed max_chunk_chars")
        if self.overlap_chars >= self.max_chunk_chars:
            raise ValueError("overlap_chars must be smaller than max_chunk_chars")
        return self


class Chunk(BaseModel):
    """One slice of normalized document text."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    text: str
    length: int = Field(..., ge=0)
    overlap: int = Field(default=0, ge=0, description="Leading characters repeated from the previous chunk")
    start: int = Field(..., ge=0, description="Offset of the first new character in the source text")
    end: int = Field(..., ge=0, description="Offset one past the last character in the source text")
    estimated_tokens: int = Field(..., ge=0)


class ChunkPlan(BaseModel):
    """Ordered, immutable chunk sequence for a single parse call."""
    model_config = ConfigDict(frozen=True)

    chunks: Tuple[Chunk, ...]
    config: ChunkingConfig
    effective_chunk_chars: int
    original_length: int

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def is_single_pass(self) -> bool:
        return len(self.chunks) == 1


class DocumentKind(str, Enum):
    """How a document's content reaches the model."""
    PDF = "pdf"
    IMAGE = "image"
    TEXT = "text"


class DocumentContent(BaseModel):
    """Readable content of one uploaded file."""
    source: str
    kind: DocumentKind
    mime_type: str
    text: Optional[str] = None
    image_bytes: Optional[bytes] = None
    page_count: int = Field(default=0, ge=0)
    size_bytes: int = Field(default=0, ge=0)

    @property
    def is_image(self) -> bool:
        return self.kind == DocumentKind.IMAGE


# ---------------------------------------------------------------------------
# Workflow records
# ---------------------------------------------------------------------------

class AISettings(BaseModel):
    """Per-merchant extraction settings."""
    merchant_id: str
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    use_anchor_extraction: bool = False
    extraction_model: Optional[str] = None
    max_chunk_chars: Optional[int] = Field(None, gt=0)
    custom_rules: List[str] = Field(default_factory=list)


class UploadRecord(BaseModel):
    """Uploaded purchase-order file as seen by the pipeline."""
    id: str
    file_name: str
    mime_type: Optional[str] = None
    file_size: int = Field(default=0, ge=0)
    merchant_id: str
    supplier_id: Optional[str] = None
    workflow_id: str
    file_url: str
    status: UploadStatus = UploadStatus.PENDING
    processed_at: Optional[datetime] = None
    error: Optional[str] = None


class WorkflowExecution(BaseModel):
    """Persisted progress record of one upload's workflow."""
    workflow_id: str
    upload_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.QUEUED
    current_stage: WorkflowStage = WorkflowStage.QUEUED
    progress_percent: int = Field(default=0, ge=0, le=100)
    attempt: int = Field(default=0, ge=0)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    stage_history: List[Dict[str, Any]] = Field(default_factory=list)


class ProgressEvent(BaseModel):
    """One progress notification scoped to a single parse call."""
    sequence: int = Field(..., ge=1)
    call_id: str
    workflow_id: Optional[str] = None
    merchant_id: Optional[str] = None
    stage: str
    current: int = Field(..., ge=0)
    total: int = Field(..., ge=1)
    percent: int = Field(..., ge=0, le=100)
    message: str = ""
    meta: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class ExtractionRequest(BaseModel):
    """A single structured-extraction call before it reaches the transport."""
    schema_name: SchemaName
    parameters: Dict[str, Any]
    prompt_text: str
    chunk_index: int = 0
    total_chunks: int = 1


class ExtractionJob(BaseModel):
    """Queue payload; everything else is fetched by the orchestrator."""
    upload_id: str
    merchant_id: str
    job_id: str = ""
    attempts_made: int = Field(default=0, ge=0)
    priority: int = Field(default=5, ge=0)

    @model_validator(mode="after")
    def default_job_id(self):
        if not self.job_id:
            self.job_id = f"job_{self.upload_id}"
        return self


class DeadLetterRecord(BaseModel):
    """A job that exhausted its retry budget, kept for manual inspection."""
    job: ExtractionJob
    error: str
    error_type: str
    attempts: int
    retryable: bool
    failed_at: datetime = Field(default_factory=datetime.now)
