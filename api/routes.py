from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Depends
from fastapi.responses import JSONResponse

from config import get_settings
from engine.errors import (
    IntelligenceError,
    InputValidationError,
    InvariantViolation,
    PersistenceFailure,
)
from models.scores import IntelligenceRequest
from models.workflow import AdvanceWorkflowRequest, RecordTranscriptRequest
from services.financial_data_service import FinancialDataService
from services.intelligence_service import IntelligenceService
from services.market_data_service import MarketDataService
from services.score_cache import BigQueryScoreCache, InMemoryScoreCache, ScoreCache
from services.signal_collector import SignalCollector
from services.transcript_insight_service import TranscriptInsightService
from services.workflow_manager import WorkflowManager
from services.workflow_store import BigQueryWorkflowStore, InMemoryWorkflowStore, WorkflowStore
from utils.connection_pool import ConnectionPool
from utils.loguru_setup import logger

router = APIRouter()


class IntelligenceHTTPError(HTTPException):
    """HTTP form of an engine error."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)


def to_http_error(error: IntelligenceError) -> IntelligenceHTTPError:
    if isinstance(error, InputValidationError):
        return IntelligenceHTTPError(status_code=422, detail=str(error))
    if isinstance(error, PersistenceFailure):
        return IntelligenceHTTPError(status_code=503, detail=str(error))
    if isinstance(error, InvariantViolation):
        logger.error(f"Invariant violation: {str(error)}")
        return IntelligenceHTTPError(status_code=500, detail=str(error))
    return IntelligenceHTTPError(status_code=500, detail=str(error))


@lru_cache(maxsize=1)
def get_connection_pool() -> ConnectionPool:
    return ConnectionPool()


@lru_cache(maxsize=1)
def get_transcript_insight_service() -> TranscriptInsightService:
    settings = get_settings()
    return TranscriptInsightService(settings.openai_api_key, settings.transcript_insight_model)


@lru_cache(maxsize=1)
def get_workflow_store() -> WorkflowStore:
    settings = get_settings()
    if settings.persistence_backend == 'bigquery':
        return BigQueryWorkflowStore(settings.google_cloud_project, settings.bigquery_dataset)
    return InMemoryWorkflowStore()


@lru_cache(maxsize=1)
def get_score_cache() -> ScoreCache:
    settings = get_settings()
    if settings.persistence_backend == 'bigquery':
        return BigQueryScoreCache(settings.google_cloud_project, settings.bigquery_dataset)
    return InMemoryScoreCache()


def get_workflow_manager() -> WorkflowManager:
    """Dependency injection for the workflow manager."""
    return WorkflowManager(get_workflow_store(), write_attempts=get_settings().workflow_write_attempts)


def get_intelligence_service() -> IntelligenceService:
    """Dependency injection for the intelligence service."""
    settings = get_settings()
    pool = get_connection_pool()
    collector = SignalCollector(
        financial_service=FinancialDataService(settings.accounting_api_base_url, settings.accounting_api_token, pool),
        transcript_service=get_transcript_insight_service(),
        market_service=MarketDataService(settings.market_data_api_base_url, settings.market_data_api_key, pool),
        timeout_seconds=settings.signal_fetch_timeout_seconds,
    )
    return IntelligenceService(collector, get_score_cache(), strict_invariants=settings.strict_invariants)


@router.post("/prospects/{prospect_id}/intelligence")
async def compute_intelligence(
        prospect_id: str,
        request: IntelligenceRequest,
        service: IntelligenceService = Depends(get_intelligence_service)
) -> JSONResponse:
    """
    Collect signals, score and recommend for a prospect.

    The returned document is also the expected payload for the
    financial-analysis workflow stage.
    """
    try:
        result = await service.compute_intelligence(prospect_id, request)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content=result.model_dump(mode='json'))


@router.get("/prospects/{prospect_id}/intelligence/latest")
async def get_latest_intelligence(
        prospect_id: str,
        analysis_type: Optional[str] = Query(default=None),
        service: IntelligenceService = Depends(get_intelligence_service)
) -> JSONResponse:
    try:
        result = await service.get_latest_score(prospect_id, analysis_type)
    except IntelligenceError as e:
        raise to_http_error(e)
    if result is None:
        raise IntelligenceHTTPError(status_code=404, detail="No intelligence computed for prospect")
    return JSONResponse(content=result.model_dump(mode='json'))


@router.post("/prospects/{prospect_id}/workflow")
async def advance_workflow(
        prospect_id: str,
        request: AdvanceWorkflowRequest,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    try:
        state = await manager.advance(prospect_id, request.stage, request.payload, request.company_name)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content=state.model_dump(mode='json'))


@router.get("/prospects/{prospect_id}/workflow/progress")
async def get_workflow_progress(
        prospect_id: str,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    try:
        progress = await manager.get_progress(prospect_id)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content=progress.model_dump(mode='json'))


@router.get("/prospects/{prospect_id}/workflow")
async def get_workflow_state(
        prospect_id: str,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    try:
        state = await manager.get_state(prospect_id)
    except IntelligenceError as e:
        raise to_http_error(e)
    if state is None:
        raise IntelligenceHTTPError(status_code=404, detail="No workflow for prospect")
    return JSONResponse(content=state.model_dump(mode='json'))


@router.delete("/prospects/{prospect_id}/workflow")
async def reset_workflow(
        prospect_id: str,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    try:
        await manager.reset(prospect_id)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content={"status": "reset", "prospect_id": prospect_id})


@router.post("/prospects/{prospect_id}/workflow/transcripts")
async def record_transcript(
        prospect_id: str,
        request: RecordTranscriptRequest,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    """Append a call transcript to the history and move the workflow to call-transcripts."""
    try:
        state = await manager.record_transcript(prospect_id, request.transcript, request.company_name)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content=state.model_dump(mode='json'))


@router.get("/prospects/{prospect_id}/workflow/transcripts")
async def get_transcripts(
        prospect_id: str,
        manager: WorkflowManager = Depends(get_workflow_manager)
) -> JSONResponse:
    try:
        transcripts = await manager.get_transcripts(prospect_id)
    except IntelligenceError as e:
        raise to_http_error(e)
    return JSONResponse(content={"prospect_id": prospect_id, "transcripts": transcripts})
