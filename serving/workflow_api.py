"""
Workflow API for problem detection and explanation generation.

Provides endpoints for:
- Uploading pages and detecting problem regions
- Starting, polling and cancelling explanation batches
- Free per-record retries and per-line Q&A
- Usage counters and export accounting
- Saved explanation sets
"""
import logging
from typing import List, Optional

from fastapi import (
    BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
)
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from api.dependencies import (
    get_explanation_service, get_registry, get_user_id, get_user_quota
)
from api.schemas import (
    ExplanationSetResponse, QnaRequest, QnaResponse, RetryRequest, SaveSetRequest,
    StartBatchRequest, VariationRequest, VariationResponse
)
from config.settings import settings
from core.cancellation import CancellationToken
from core.exceptions import (
    BatchInProgressError, GenerationError, ImageDecodeError, PromptNotFoundError,
    QuotaExceededError
)
from data.database import get_db, get_db_manager, init_database
from services.generation_service import ExplanationService
from services.orchestrator import BatchOrchestrator
from services.prompt_service import seed_default_prompts
from services.quota_service import UserQuota
from utils.image_utils import load_pages
from utils.logger import setup_logging
from .session_manager import BatchSessionRegistry
from .storage_service import ExplanationStorageService

logger = logging.getLogger(__name__)


# Create FastAPI app
workflow_app = FastAPI(
    title="Haejeok Explanation API",
    description="Math problem region detection and batch explanation generation",
    version="1.0.0"
)


# Initialize database on startup
@workflow_app.on_event("startup")
async def startup_event():
    """Initialize logging, database tables and default prompts on startup."""
    setup_logging(level=settings.log_level, log_dir=settings.log_dir)
    init_database()
    seed_default_prompts(get_db_manager().session)
    logger.info("Workflow API initialized")


# Error mapping

@workflow_app.exception_handler(ImageDecodeError)
async def image_decode_error_handler(request: Request, exc: ImageDecodeError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@workflow_app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    return JSONResponse(
        status_code=429,
        content={
            "detail": str(exc),
            "mode": exc.mode,
            "requested": exc.requested,
            "remaining": exc.remaining
        }
    )


@workflow_app.exception_handler(BatchInProgressError)
async def batch_in_progress_handler(request: Request, exc: BatchInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@workflow_app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    return JSONResponse(
        status_code=502,
        content={"detail": str(exc), "kind": exc.kind.value}
    )


@workflow_app.exception_handler(PromptNotFoundError)
async def prompt_not_found_handler(request: Request, exc: PromptNotFoundError):
    logger.error(str(exc))
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def page_analysis_to_dict(page, analysis) -> dict:
    return {
        "page_number": page.page_number,
        "source_name": page.source_name,
        "width": page.width,
        "height": page.height,
        "regions": [bbox.to_dict() for bbox in analysis.regions] if analysis else [],
        "problems": [
            {
                "bbox": problem.bbox.to_dict(),
                "problem_type": problem.problem_type.value,
                "problem_body": problem.problem_body,
                "choices": problem.choices,
                "text": problem.full_text
            }
            for problem in (analysis.problems if analysis else [])
        ]
    }


@workflow_app.post("/analyze")
async def analyze(
    files: List[UploadFile] = File(...),
    recognize: bool = Query(True, description="Recognize problem text in each region"),
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry),
    service: ExplanationService = Depends(get_explanation_service)
):
    """
    Upload images/PDFs, detect problem regions and optionally recognize them.

    Args:
        files: Image or PDF files, in page order
        recognize: Whether to run recognition per region

    Returns:
        upload_id plus per-page regions and recognized problems
    """
    uploaded = [(file.filename or "", await file.read()) for file in files]
    pages = load_pages(uploaded, target_dpi=settings.pdf_render_dpi)
    if not pages:
        raise HTTPException(status_code=400, detail="No pages were uploaded")

    upload = registry.add_upload(user_id, pages)
    orchestrator = BatchOrchestrator(service)
    analyses = await orchestrator.analyze_pages(pages, CancellationToken(), recognize=recognize)
    by_page = {analysis.page_number: analysis for analysis in analyses}

    response = {
        "upload_id": upload.id,
        "pages": [page_analysis_to_dict(page, by_page.get(page.page_number)) for page in pages],
        "total_regions": sum(len(a.regions) for a in analyses)
    }
    if len(pages) > settings.max_pages_warning:
        response["warning"] = (
            f"{len(pages)} pages uploaded; processing more than "
            f"{settings.max_pages_warning} pages may take a while."
        )
    return response


@workflow_app.post("/batches")
async def start_batch(
    request: StartBatchRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry),
    service: ExplanationService = Depends(get_explanation_service),
    quota: UserQuota = Depends(get_user_quota)
):
    """
    Charge quota and start generating explanations in the background.

    Returns:
        Batch state with loading placeholder records
    """
    if not request.selections:
        raise HTTPException(status_code=400, detail="No regions were selected")

    registry.ensure_idle(user_id)
    upload = registry.get_upload(user_id, request.upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")

    token = CancellationToken()
    orchestrator = BatchOrchestrator(service, quota)
    run = orchestrator.prepare_batch(
        [s.to_selection() for s in request.selections],
        upload.pages,
        request.mode,
        token,
        guidelines=request.guidelines
    )
    session = registry.add_batch(
        user_id, upload.id, orchestrator, token, run.result, guidelines=request.guidelines
    )
    background_tasks.add_task(orchestrator.generate, run)
    return session.to_dict()


@workflow_app.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str,
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry)
):
    """Get a batch's state, counters and records."""
    session = registry.get_batch(user_id, batch_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return session.to_dict()


@workflow_app.post("/batches/{batch_id}/cancel")
async def cancel_batch(
    batch_id: str,
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry)
):
    """Signal cancellation. Items that do not complete are refunded."""
    session = registry.get_batch(user_id, batch_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    session.token.cancel()
    return session.to_dict()


@workflow_app.post("/batches/{batch_id}/records/{record_id}/retry")
async def retry_record(
    batch_id: str,
    record_id: int,
    request: Optional[RetryRequest] = None,
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry)
):
    """Regenerate one record without charging quota."""
    session = registry.get_batch(user_id, batch_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Batch not found")

    record = session.orchestrator.get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    if record.is_loading:
        raise HTTPException(status_code=409, detail="Record is still loading")

    upload = registry.get_upload(user_id, session.upload_id)
    pages = upload.pages if upload else []
    guidelines = request.guidelines if request else session.guidelines
    await session.orchestrator.retry_one(record, pages, guidelines=guidelines)
    return record.to_dict()


@workflow_app.get("/usage")
async def get_usage(quota: UserQuota = Depends(get_user_quota)):
    """Usage counters against tier limits."""
    return quota.get_usage()


@workflow_app.post("/exports/{kind}")
async def record_export(kind: str, quota: UserQuota = Depends(get_user_quota)):
    """
    Count one export against the monthly limit.

    Document generation itself happens client-side.
    """
    try:
        result = quota.charge_export(kind)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.ok:
        return JSONResponse(
            status_code=429,
            content={"detail": f"Monthly '{kind}' export limit reached", "remaining": result.remaining}
        )
    return {"kind": kind, "remaining": result.remaining}


@workflow_app.post("/qna", response_model=QnaResponse)
async def ask_about_line(
    request: QnaRequest,
    user_id: str = Depends(get_user_id),
    service: ExplanationService = Depends(get_explanation_service)
):
    """Answer a question about one line of an explanation."""
    answer = await service.ask_about_line(
        request.problem_text,
        request.full_explanation,
        request.selected_line,
        request.user_question
    )
    return QnaResponse(answer=answer)


@workflow_app.post("/variations", response_model=VariationResponse)
async def generate_variation(
    request: VariationRequest,
    user_id: str = Depends(get_user_id),
    service: ExplanationService = Depends(get_explanation_service)
):
    """Generate a variation of a problem with its explanation."""
    variation = await service.generate_variation(
        request.problem_text,
        request.level,
        guidelines=request.guidelines,
        core_idea=request.core_idea
    )
    return VariationResponse(**variation.to_dict())


@workflow_app.post("/sets", response_model=ExplanationSetResponse)
async def save_set(
    request: SaveSetRequest,
    user_id: str = Depends(get_user_id),
    registry: BatchSessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db)
):
    """Save a finished batch's completed explanations as a set."""
    session = registry.get_batch(user_id, request.batch_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    if session.is_running:
        raise HTTPException(status_code=409, detail="Batch is still running")

    storage = ExplanationStorageService(db)
    try:
        explanation_set = storage.save_set(user_id, request.title, session.result.records)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ExplanationSetResponse(**explanation_set.to_dict())


@workflow_app.get("/sets")
async def list_sets(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db)
):
    """List the user's saved sets, newest first."""
    storage = ExplanationStorageService(db)
    return [s.to_dict() for s in storage.list_sets(user_id, limit=limit, offset=offset)]


@workflow_app.get("/sets/{set_id}")
async def get_set(
    set_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db)
):
    """Load a saved set with its explanations."""
    data = ExplanationStorageService(db).get_set(user_id, set_id)
    if data is None:
        raise HTTPException(status_code=404, detail="Set not found")
    return data


@workflow_app.delete("/explanations/{explanation_id}")
async def delete_explanation(
    explanation_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db)
):
    """Delete one saved explanation."""
    if not ExplanationStorageService(db).delete_explanation(user_id, explanation_id):
        raise HTTPException(status_code=404, detail="Explanation not found")
    return {"deleted": explanation_id}


@workflow_app.get("/")
async def root():
    """API root endpoint."""
    return {
        "name": "Haejeok Explanation API",
        "version": "1.0.0",
        "endpoints": {
            "analyze": "POST /analyze",
            "start_batch": "POST /batches",
            "get_batch": "GET /batches/{batch_id}",
            "cancel_batch": "POST /batches/{batch_id}/cancel",
            "retry_record": "POST /batches/{batch_id}/records/{record_id}/retry",
            "usage": "GET /usage",
            "record_export": "POST /exports/{kind}",
            "qna": "POST /qna",
            "variation": "POST /variations",
            "save_set": "POST /sets",
            "list_sets": "GET /sets",
            "get_set": "GET /sets/{set_id}",
            "delete_explanation": "DELETE /explanations/{explanation_id}"
        }
    }


# Export app for uvicorn
app = workflow_app
