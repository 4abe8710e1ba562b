import functools
import uuid
from typing import Optional

import anyio
import anyio.lowlevel
import anyio.to_thread
import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import Field

from . import rag
from .config import Settings
from .embeddings import Embedder
from .errors import (
    ChunkingError,
    ExtractionError,
    PolicyAssistantError,
    ValidationError,
    VectorStoreError,
)
from .llm import LLMClient
from .logging_config import configure_logging
from .models import (
    EXAMPLE_POLICY_SUMMARY,
    ApiModel,
    ComparisonAnswer,
    CoverageChecklist,
    PolicySummary,
    QAResponse,
)
from .store import VectorStore
from .utils import chunk_document, extract_text_from_pdf

logger = structlog.get_logger(__name__)

router = APIRouter()


# --------- Models ---------

class CoverageCheckReq(ApiModel):
    incident_description: str


class ComparisonReq(ApiModel):
    policy_id1: str
    policy_id2: str
    question: str
    policy_name1: Optional[str] = None
    policy_name2: Optional[str] = None


class QueryReq(ApiModel):
    question: str
    document_id: Optional[str] = None
    policy_id: Optional[str] = None
    top_k: int = Field(default=5, ge=1, le=20)


class UploadedDocument(ApiModel):
    id: str
    filename: str
    page_count: int
    chunk_count: int
    policy_id: Optional[str] = None
    title: Optional[str] = None


class UploadResp(ApiModel):
    message: str
    document: UploadedDocument


class DeleteResp(ApiModel):
    deleted_chunks: int


# --------- Helpers ---------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> VectorStore:
    return request.app.state.store


def get_llm(request: Request) -> LLMClient:
    return request.app.state.llm


def require_text(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(message)
    return value.strip()


async def run_blocking(func, *args, timeout: float, error_cls=VectorStoreError, stage: str = "request",
                       abandon: bool = True, **kwargs):
    """Run a blocking call in a worker thread, bounded by ``timeout`` seconds.

    With ``abandon=False`` the worker is waited for even past the deadline, so a
    timed-out write has finished (or failed) by the time the error is raised.
    """
    try:
        with anyio.fail_after(timeout):
            result = await anyio.to_thread.run_sync(
                functools.partial(func, *args, **kwargs), abandon_on_cancel=abandon
            )
            await anyio.lowlevel.checkpoint_if_cancelled()
            return result
    except TimeoutError:
        raise error_cls(f"{stage} timed out after {timeout}s")


async def discard_document(store: VectorStore, document_id: str, timeout: float) -> None:
    try:
        await run_blocking(store.delete_document, document_id, timeout=timeout,
                           stage="Discarding partial upload", abandon=False)
    except PolicyAssistantError as e:
        logger.warning("partial_upload_not_discarded", document_id=document_id, error=str(e))


def fail(status_code: int, error: str, exc: Exception, **context):
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail={"error": str(exc)})
    logger.error(error, error_type=type(exc).__name__, error_message=str(exc), exc_info=exc, **context)
    raise HTTPException(status_code=status_code, detail={"error": error})


# --------- Routes ---------

@router.get("/")
def root(request: Request):
    llm: LLMClient = request.app.state.llm
    store: VectorStore = request.app.state.store
    return {
        "ok": True,
        "service": "Pet Policy Assistant",
        "llm": llm.available,
        "embedding_cache": store.embedder.cache_stats(),
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/api/documents/upload", response_model=UploadResp, status_code=201,
             response_model_exclude_none=True)
async def upload_document(
    file: UploadFile = File(...),
    policy_id: Optional[str] = Form(default=None, alias="policyId"),
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
):
    filename = file.filename or "document.pdf"
    try:
        if file.content_type != "application/pdf" and not filename.lower().endswith(".pdf"):
            raise ValidationError("Only PDF files are allowed")
        content = await file.read(settings.max_upload_bytes + 1)
        if len(content) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail={"error": "File too large"})
        if not content:
            raise ValidationError("Uploaded file is empty")
        policy_id = policy_id.strip() if policy_id and policy_id.strip() else None

        extracted = await run_blocking(
            extract_text_from_pdf, content,
            timeout=settings.pdf_parse_timeout, error_cls=ExtractionError, stage="PDF parsing",
        )
        document_id = uuid.uuid4().hex
        chunks = await run_blocking(
            chunk_document,
            extracted.text,
            extracted.page_count,
            document_id=document_id,
            policy_id=policy_id,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            timeout=settings.request_timeout, error_cls=ChunkingError, stage="Chunking",
        )
        if not chunks:
            raise ValidationError("No extractable text found in PDF")

        # all-or-nothing: a failed or timed-out write must not leave chunks behind
        try:
            await run_blocking(
                store.store_chunks, chunks, document_id, policy_id,
                timeout=settings.request_timeout, stage="Storing chunks", abandon=False,
            )
        except PolicyAssistantError:
            await discard_document(store, document_id, settings.request_timeout)
            raise
    except PolicyAssistantError as e:
        fail(500, "Failed to process document", e, filename=filename, policy_id=policy_id)

    logger.info("document_ingested", document_id=document_id, policy_id=policy_id,
                pages=extracted.page_count, chunks=len(chunks))
    return UploadResp(
        message="Document uploaded and processed successfully",
        document=UploadedDocument(
            id=document_id,
            filename=filename,
            page_count=extracted.page_count,
            chunk_count=len(chunks),
            policy_id=policy_id,
            title=extracted.metadata.title,
        ),
    )


@router.delete("/api/documents/{document_id}", response_model=DeleteResp)
async def delete_document(
    document_id: str,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
):
    try:
        deleted = await run_blocking(store.delete_document, document_id,
                                     timeout=settings.request_timeout, stage="Deleting document")
    except PolicyAssistantError as e:
        fail(500, "Failed to delete document", e, document_id=document_id)
    return DeleteResp(deleted_chunks=deleted)


@router.delete("/api/policies/{policy_id}/documents", response_model=DeleteResp)
async def delete_policy_documents(
    policy_id: str,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
):
    try:
        deleted = await run_blocking(store.delete_policy, policy_id,
                                     timeout=settings.request_timeout, stage="Deleting policy")
    except PolicyAssistantError as e:
        fail(500, "Failed to delete policy documents", e, policy_id=policy_id)
    return DeleteResp(deleted_chunks=deleted)


@router.post("/api/policies/{policy_id}/coverage-check", response_model=CoverageChecklist,
             response_model_exclude_none=True)
async def check_coverage(
    policy_id: str,
    req: CoverageCheckReq,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
):
    try:
        policy_id = require_text(policy_id, "Policy ID is required")
        incident = require_text(req.incident_description,
                                "Provide incident description in request body as a non-empty string")
        return await run_blocking(
            rag.analyze_incident_coverage, store, llm, policy_id, incident,
            timeout=settings.request_timeout, stage="Coverage analysis",
        )
    except PolicyAssistantError as e:
        fail(500, "Failed to analyze coverage", e, policy_id=policy_id,
             incident_description=req.incident_description[:100])


@router.post("/api/policies/compare", response_model=ComparisonAnswer, response_model_exclude_none=True)
async def compare_policies(
    req: ComparisonReq,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
):
    try:
        question = require_text(req.question, "Question is required and must be a non-empty string")
        policy_id1 = require_text(req.policy_id1, "Both policy IDs are required")
        policy_id2 = require_text(req.policy_id2, "Both policy IDs are required")
        if policy_id1 == policy_id2:
            raise ValidationError("Policy IDs must be different")
        return await run_blocking(
            rag.compare_policies_for_question, store, llm, policy_id1, policy_id2, question,
            (req.policy_name1 or "").strip() or "Policy 1",
            (req.policy_name2 or "").strip() or "Policy 2",
            timeout=settings.request_timeout, stage="Policy comparison",
        )
    except PolicyAssistantError as e:
        fail(500, "Failed to answer comparison question", e,
             policy_id1=req.policy_id1, policy_id2=req.policy_id2, question=req.question[:100])


@router.get("/api/policies/summary/example", response_model=PolicySummary, response_model_exclude_none=True)
def example_summary():
    return EXAMPLE_POLICY_SUMMARY


@router.post("/api/policies/{policy_id}/summary", response_model=PolicySummary,
             response_model_exclude_none=True)
async def summarize_policy(
    policy_id: str,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
):
    try:
        return await run_blocking(
            rag.extract_policy_summary, store, llm, policy_id,
            timeout=settings.request_timeout, stage="Policy summary",
        )
    except PolicyAssistantError as e:
        fail(500, "Failed to extract policy summary", e, policy_id=policy_id)


@router.post("/api/qa/ask", response_model=QAResponse, response_model_exclude_none=True)
async def ask_question(
    req: QueryReq,
    settings: Settings = Depends(get_settings),
    store: VectorStore = Depends(get_store),
    llm: LLMClient = Depends(get_llm),
):
    try:
        question = require_text(req.question, "Question is required and must be a non-empty string")
        return await run_blocking(
            rag.answer_question, store, llm, question, req.document_id, req.policy_id, req.top_k,
            timeout=settings.request_timeout, stage="Question answering",
        )
    except PolicyAssistantError as e:
        fail(500, "Failed to generate answer", e, question=req.question[:100])


# --------- App ---------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[VectorStore] = None,
    llm: Optional[LLMClient] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if store is None:
        store = VectorStore.from_settings(settings, Embedder(settings.embed_model))
    if llm is None:
        llm = LLMClient(settings.openai_api_key, settings.openai_model)

    app = FastAPI(title="Pet Policy Assistant")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.llm = llm
    app.include_router(router)
    return app


def build_default_app() -> FastAPI:
    settings = Settings.from_env()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.json_logs,
        environment=settings.environment,
        log_dir=settings.log_dir,
    )
    logger.info("app_starting", environment=settings.environment, chroma_url=settings.chroma_url,
                llm=bool(settings.openai_api_key))
    return create_app(settings)


app = build_default_app()
