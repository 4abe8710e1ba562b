"""Retrieval-augmented answers over stored policy chunks.

Each function takes the process's ``VectorStore`` and ``LLMClient`` explicitly.
When no LLM is configured the functions degrade to context-only answers.
"""

import json
import math
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from .errors import GenerationError
from .llm import LLMClient, parse_json_object
from .models import (
    ActionStep,
    ComparisonAnswer,
    ComparisonSources,
    ConfidenceLevel,
    CoverageChecklist,
    CoverageDetails,
    PageSource,
    PolicySummary,
    QAResponse,
    SimilarChunk,
    SourceChunk,
    SourceCitation,
    SummaryConfidence,
)
from .store import VectorStore

logger = structlog.get_logger(__name__)

# cosine distance: 0 = identical
CITATION_DISTANCE_THRESHOLD = 0.4
MAX_CITATIONS = 2

NO_CONTEXT_ANSWER = (
    "I couldn't find any relevant information in your policy documents to answer this "
    "question. Please make sure you have uploaded your policy document and try "
    "rephrasing your question."
)

COVERAGE_TOPICS = [
    "coverage types what is covered",
    "exclusions what is not covered",
    "claim submission required documents",
    "waiting period",
    "deductible reimbursement",
]

SUMMARY_TOPICS = [
    "plan name policy number effective date",
    "deductible",
    "reimbursement rate",
    "annual maximum per incident limit",
    "waiting period",
    "coverage types",
    "exclusions",
    "claim required documents",
]


def build_context(chunks: List[SimilarChunk], label: Optional[str] = None) -> str:
    blocks = []
    for i, chunk in enumerate(chunks, start=1):
        page = f" (Page {chunk.page_number})" if chunk.page_number else ""
        head = f"{label}, Section {i}" if label else f"Source {i}"
        blocks.append(f"[{head}{page}]:\n{chunk.text}")
    return "\n\n---\n\n".join(blocks)


def _source_chunks(chunks: List[SimilarChunk]) -> List[SourceChunk]:
    return [
        SourceChunk(text=c.text, page_number=c.page_number, document_id=c.document_id)
        for c in chunks
    ]


# --------- Q&A ---------

QA_SYSTEM_PROMPT = """You are a helpful assistant that answers questions about pet insurance policies.
Your answers should be:
- Accurate and based only on the provided policy context
- Clear and easy to understand
- Include specific details like dollar amounts, percentages, and time periods when available
- Cite which source(s) you used by referencing "Source 1", "Source 2", etc.

If the provided context doesn't contain enough information to fully answer the question, say so honestly.
Do not make up information that isn't in the provided context.

Policy Context:
{context}"""


def answer_question(
    store: VectorStore,
    llm: LLMClient,
    question: str,
    document_id: Optional[str] = None,
    policy_id: Optional[str] = None,
    n_results: int = 5,
) -> QAResponse:
    chunks = store.query_similar_chunks(question, n_results, document_id, policy_id)
    if not chunks:
        return QAResponse(answer=NO_CONTEXT_ANSWER, sources=[], mode="llm" if llm.available else "context")

    citations = [
        SourceCitation(
            text=c.text,
            chunk_index=c.chunk_index,
            page_number=c.page_number,
            document_id=c.document_id,
            policy_id=c.policy_id,
            similarity=c.distance,
        )
        for c in chunks
        if c.distance < CITATION_DISTANCE_THRESHOLD
    ][:MAX_CITATIONS]

    if not llm.available:
        answer = (
            "\n".join(c.text for c in chunks[:2])
            + "\n\n(Note: LLM not configured, returning best-matching context. "
            "Set OPENAI_API_KEY to enable generation.)"
        )
        return QAResponse(answer=answer, sources=citations, mode="context")

    answer = llm.chat([
        {"role": "system", "content": QA_SYSTEM_PROMPT.format(context=build_context(chunks))},
        {"role": "user", "content": question},
    ])
    return QAResponse(answer=answer, sources=citations, mode="llm")


# --------- Coverage checklist ---------

COVERAGE_SYSTEM_PROMPT = """You are an expert at analyzing pet insurance policies to determine coverage for specific incidents.

Analyze the incident against the policy context and return ONLY valid JSON with this structure:
{
  "isCovered": true | false | "partial" | "unclear",
  "confidence": "high" | "medium" | "low",
  "coverageDetails": {
    "coveredAspects": ["aspects that ARE covered"],
    "excludedAspects": ["aspects that are NOT covered"],
    "waitingPeriodApplies": true | false,
    "deductibleApplies": true | false,
    "notes": "additional coverage notes"
  },
  "requiredDocuments": [
    {"documentType": "...", "description": "...", "whyRequired": "...", "deadline": "optional"}
  ],
  "actionSteps": [
    {"step": 1, "action": "...", "priority": "high" | "medium" | "low", "deadline": "optional",
     "policyReference": {"pageNumber": 5, "section": "optional"}}
  ],
  "estimatedCoverage": {"percentage": 90, "notes": "optional"},
  "warnings": ["important notes"],
  "summary": "2-3 sentence summary"
}

Guidelines:
- Extract ALL required documents mentioned in the policy
- Include exact deadlines, percentages and requirements from the policy
- If information is unclear, use confidence "medium" or "low" and isCovered "unclear"
- Order action steps by priority
- Include page references when available
- Only include information explicitly stated in the policy context"""

COVERAGE_USER_PROMPT = """Analyze coverage for this incident:

Incident Description: "{incident}"

Policy Context:
{context}

Return ONLY the JSON object described above."""


def fallback_checklist(warning: str, summary: str, chunks: List[SimilarChunk] = ()) -> CoverageChecklist:
    return CoverageChecklist(
        is_covered="unclear",
        confidence=ConfidenceLevel.LOW,
        coverage_details=CoverageDetails(),
        required_documents=[],
        action_steps=[
            ActionStep(step=1, action="Contact your insurance provider to verify coverage", priority="high"),
        ],
        warnings=[warning],
        summary=summary,
        source_chunks=_source_chunks(list(chunks)),
    )


def gather_coverage_chunks(
    store: VectorStore, policy_id: str, incident_description: str, n_chunks: int = 10
) -> List[SimilarChunk]:
    queries = [incident_description] + COVERAGE_TOPICS
    per_query = math.ceil(n_chunks / len(queries))

    seen = set()
    found = []
    for query in queries:
        for chunk in store.query_similar_chunks(query, per_query, policy_id=policy_id):
            key = chunk.text.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            found.append(chunk)

    found.sort(key=lambda c: c.distance)
    return found[:n_chunks]


def analyze_incident_coverage(
    store: VectorStore,
    llm: LLMClient,
    policy_id: str,
    incident_description: str,
    n_chunks: int = 10,
) -> CoverageChecklist:
    chunks = gather_coverage_chunks(store, policy_id, incident_description, n_chunks)
    if not chunks:
        return fallback_checklist(
            "Unable to find relevant policy information. Please contact your insurance provider.",
            "Unable to analyze coverage based on available policy information. "
            "Please contact your insurance provider directly.",
        )
    if not llm.available:
        return fallback_checklist(
            "Automated coverage analysis is not configured. Review the cited policy sections.",
            "Relevant policy sections were found but could not be analyzed automatically.",
            chunks,
        )

    raw = llm.chat([
        {"role": "system", "content": COVERAGE_SYSTEM_PROMPT},
        {"role": "user", "content": COVERAGE_USER_PROMPT.format(
            incident=incident_description, context=build_context(chunks))},
    ])
    try:
        data = parse_json_object(raw)
        data.pop("sourceChunks", None)
        checklist = CoverageChecklist.model_validate({**data, "sourceChunks": []})
    except (ValueError, PydanticValidationError) as e:
        logger.warning("coverage_response_unparseable", policy_id=policy_id, error=str(e))
        return fallback_checklist(
            "Unable to parse coverage analysis. Please contact your insurance provider.",
            "Unable to analyze coverage. Please contact your insurance provider directly for assistance.",
            chunks,
        )

    checklist.source_chunks = _source_chunks(chunks)
    return checklist


# --------- Comparison ---------

COMPARISON_SYSTEM_PROMPT = """You are a helpful assistant that compares pet insurance policies.
Your answers should be:
- Clear and conversational, as if explaining to a friend
- Focused on the user's specific question
- Highlighting key differences between the two policies
- Specific about dollar amounts, percentages, and time periods when available
- Ending with which policy might be better for the user's question (if applicable)

At the end of your answer, add a brief note suggesting which page(s) the user should refer to.
For example: "For more details, refer to page X of {name1} and page Y of {name2}."

If the provided context doesn't contain enough information to fully answer the question, say so honestly.
Do not make up information that isn't in the provided context."""

COMPARISON_USER_PROMPT = """The user asked: "{question}"

Compare how {name1} and {name2} handle this:

{name1} - relevant sections:
{context1}

{name2} - relevant sections:
{context2}

Provide a clear, conversational comparison that directly answers the user's question."""


def _page_sources(chunks: List[SimilarChunk]) -> List[PageSource]:
    return [
        PageSource(page_number=c.page_number, document_id=c.document_id)
        for c in chunks
        if c.page_number is not None
    ]


def compare_policies_for_question(
    store: VectorStore,
    llm: LLMClient,
    policy_id1: str,
    policy_id2: str,
    question: str,
    policy1_name: str = "Policy 1",
    policy2_name: str = "Policy 2",
    n_chunks: int = 7,
) -> ComparisonAnswer:
    chunks1 = store.query_similar_chunks(question, n_chunks, policy_id=policy_id1)
    chunks2 = store.query_similar_chunks(question, n_chunks, policy_id=policy_id2)
    context1 = build_context(chunks1, policy1_name) or "No relevant sections found"
    context2 = build_context(chunks2, policy2_name) or "No relevant sections found"

    if llm.available:
        answer = llm.chat([
            {"role": "system", "content": COMPARISON_SYSTEM_PROMPT.format(
                name1=policy1_name, name2=policy2_name)},
            {"role": "user", "content": COMPARISON_USER_PROMPT.format(
                question=question, name1=policy1_name, name2=policy2_name,
                context1=context1, context2=context2)},
        ])
    else:
        answer = (
            f"{policy1_name}:\n{context1}\n\n{policy2_name}:\n{context2}"
            "\n\n(Note: LLM not configured, returning best-matching context.)"
        )

    return ComparisonAnswer(
        answer=answer,
        sources=ComparisonSources(policy1=_page_sources(chunks1), policy2=_page_sources(chunks2)),
    )


# --------- Policy summary ---------

SUMMARY_SYSTEM_PROMPT = (
    "Extract a JSON object strictly matching the provided JSON Schema from the pet insurance "
    "policy text. Use only information present in the text. If a field is missing, use null. "
    "Set confidence.overall and confidence.fieldConfidence to high, medium or low, and cite "
    "page numbers and short text snippets under sources."
)


def extract_policy_summary(
    store: VectorStore,
    llm: LLMClient,
    policy_id: str,
    n_chunks: int = 12,
) -> PolicySummary:
    per_topic = max(1, math.ceil(n_chunks / len(SUMMARY_TOPICS)))
    seen = set()
    chunks = []
    for topic in SUMMARY_TOPICS:
        for chunk in store.query_similar_chunks(topic, per_topic, policy_id=policy_id):
            key = (chunk.document_id, chunk.chunk_index)
            if key not in seen:
                seen.add(key)
                chunks.append(chunk)
    chunks.sort(key=lambda c: (c.document_id or "", c.chunk_index))

    extracted_at = datetime.now(timezone.utc).isoformat()
    document_id = chunks[0].document_id if chunks else None
    empty = PolicySummary(
        confidence=SummaryConfidence(overall=ConfidenceLevel.LOW),
        extracted_at=extracted_at,
        document_id=document_id,
    )
    if not chunks or not llm.available:
        return empty

    schema = PolicySummary.model_json_schema(by_alias=True)
    raw = llm.chat(
        [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": (
                f"Text:\n{build_context(chunks)[:15000]}\n\n"
                f"JSON Schema:\n{json.dumps(schema)}\n\n"
                "Return ONLY valid JSON with keys as in the schema."
            )},
        ],
        temperature=0,
    )
    try:
        summary = PolicySummary.model_validate(parse_json_object(raw))
    except (ValueError, PydanticValidationError) as e:
        logger.warning("summary_response_unparseable", policy_id=policy_id, error=str(e))
        raise GenerationError(f"Policy summary extraction returned invalid JSON: {e}") from e

    summary.extracted_at = extracted_at
    summary.document_id = summary.document_id or document_id
    return summary
