"""Data model shared by the extractor, chunker, vector store and routes.

Attributes are snake_case in Python and camelCase on the wire.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# --------- Ingestion ---------

class DocumentMetadata(ApiModel):
    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None


class ExtractedTextResult(ApiModel):
    model_config = ConfigDict(frozen=True)

    text: str
    page_count: int = Field(ge=1)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


class ChunkMetadata(ApiModel):
    page_number: int
    document_id: Optional[str] = None
    policy_id: Optional[str] = None


class Chunk(ApiModel):
    text: str
    chunk_index: int = Field(ge=0)
    metadata: ChunkMetadata


class SimilarChunk(ApiModel):
    text: str
    chunk_index: int = 0
    page_number: Optional[int] = None
    document_id: Optional[str] = None
    policy_id: Optional[str] = None
    distance: float = 0.0  # lower = more similar


# --------- Policy summary contract ---------

class DeductibleInfo(ApiModel):
    amount: float
    type: Literal["annual", "per-incident", "per-condition", "lifetime"]
    applies_to: Optional[str] = None


class OtherWaitingPeriod(ApiModel):
    condition: str
    days: int


class WaitingPeriodInfo(ApiModel):
    accident: Optional[int] = None
    illness: Optional[int] = None
    orthopedic: Optional[int] = None
    cruciate: Optional[int] = None
    other: Optional[List[OtherWaitingPeriod]] = None


class SummaryConfidence(ApiModel):
    overall: Optional[ConfidenceLevel] = None
    field_confidence: Optional[Dict[str, ConfidenceLevel]] = None


class SummarySource(ApiModel):
    page_number: Optional[int] = None
    chunk_id: Optional[str] = None
    text_snippet: Optional[str] = None


class PolicySummary(ApiModel):
    """Fields an LLM extracts from a pet-insurance policy.

    Every field is optional because extraction is best-effort; ``confidence``
    and ``sources`` say how much to trust each one.
    """

    plan_name: Optional[str] = None
    policy_number: Optional[str] = None
    effective_date: Optional[str] = None  # ISO date
    expiration_date: Optional[str] = None

    deductible: Optional[DeductibleInfo] = None
    reimbursement_rate: Optional[float] = None  # percent, 90 == 90%
    annual_maximum: Optional[float] = None
    per_incident_maximum: Optional[float] = None

    waiting_period: Optional[WaitingPeriodInfo] = None

    coverage_types: Optional[List[str]] = None
    exclusions: Optional[List[str]] = None
    required_documents: Optional[List[str]] = None

    confidence: Optional[SummaryConfidence] = None
    sources: Optional[Dict[str, List[SummarySource]]] = None

    extracted_at: Optional[str] = None
    document_id: Optional[str] = None


EXAMPLE_POLICY_SUMMARY = PolicySummary(
    plan_name="Complete Coverage Plan",
    policy_number="PET-12345",
    effective_date="2024-01-15",
    expiration_date="2025-01-15",
    deductible=DeductibleInfo(amount=250, type="annual", applies_to="accident and illness"),
    reimbursement_rate=90,
    annual_maximum=10000,
    per_incident_maximum=None,
    waiting_period=WaitingPeriodInfo(accident=0, illness=14, orthopedic=14, cruciate=14),
    coverage_types=["accident", "illness", "dental", "prescription"],
    exclusions=["pre-existing conditions", "breeding costs", "cosmetic procedures"],
    required_documents=["itemized invoice", "medical records", "receipt"],
    confidence=SummaryConfidence(
        overall=ConfidenceLevel.HIGH,
        field_confidence={
            "deductible": ConfidenceLevel.HIGH,
            "reimbursementRate": ConfidenceLevel.HIGH,
            "waitingPeriod": ConfidenceLevel.MEDIUM,
        },
    ),
    sources={
        "deductible": [
            SummarySource(
                page_number=3,
                text_snippet="Annual deductible of $250 applies to all covered conditions",
            )
        ],
        "reimbursementRate": [
            SummarySource(page_number=4, text_snippet="90% reimbursement rate for covered expenses")
        ],
    },
)


# --------- Coverage checklist ---------

Priority = Literal["high", "medium", "low"]


class RequiredDocument(ApiModel):
    document_type: str
    description: str = ""
    why_required: str = ""
    deadline: Optional[str] = None


class PolicyReference(ApiModel):
    page_number: Optional[int] = None
    section: Optional[str] = None


class ActionStep(ApiModel):
    step: int
    action: str
    priority: Priority = "medium"
    deadline: Optional[str] = None
    policy_reference: Optional[PolicyReference] = None


class CoverageDetails(ApiModel):
    covered_aspects: List[str] = Field(default_factory=list)
    excluded_aspects: Optional[List[str]] = None
    waiting_period_applies: bool = False
    deductible_applies: bool = False
    notes: Optional[str] = None


class EstimatedCoverage(ApiModel):
    percentage: Optional[float] = None
    notes: Optional[str] = None


class SourceChunk(ApiModel):
    text: str
    page_number: Optional[int] = None
    document_id: Optional[str] = None


class CoverageChecklist(ApiModel):
    is_covered: Union[bool, Literal["partial", "unclear"]]
    confidence: ConfidenceLevel
    coverage_details: CoverageDetails
    required_documents: List[RequiredDocument] = Field(default_factory=list)
    action_steps: List[ActionStep] = Field(default_factory=list)
    estimated_coverage: Optional[EstimatedCoverage] = None
    warnings: Optional[List[str]] = None
    summary: str
    source_chunks: List[SourceChunk] = Field(default_factory=list)


# --------- Comparison / QA ---------

class PageSource(ApiModel):
    page_number: Optional[int] = None
    document_id: Optional[str] = None


class ComparisonSources(ApiModel):
    policy1: List[PageSource] = Field(default_factory=list)
    policy2: List[PageSource] = Field(default_factory=list)


class ComparisonAnswer(ApiModel):
    answer: str
    sources: ComparisonSources = Field(default_factory=ComparisonSources)


class SourceCitation(ApiModel):
    text: str
    chunk_index: int
    page_number: Optional[int] = None
    document_id: Optional[str] = None
    policy_id: Optional[str] = None
    similarity: float  # cosine distance, lower = more similar


class QAResponse(ApiModel):
    answer: str
    sources: List[SourceCitation] = Field(default_factory=list)
    mode: Literal["llm", "context"] = "llm"
