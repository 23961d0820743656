from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import Field

from models.common import IntelPydanticBaseModel


class WorkflowStage(StrEnum):
    DASHBOARD = "dashboard"
    DATA_EXTRACTION = "data-extraction"
    CALL_TRANSCRIPTS = "call-transcripts"
    FINANCIAL_ANALYSIS = "financial-analysis"
    REPORT_GENERATION = "report-generation"
    AUDIT_DECK = "audit-deck"


# Definition order of WorkflowStage is the workflow order
STAGE_ORDER: List[WorkflowStage] = list(WorkflowStage)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkflowState(IntelPydanticBaseModel):
    """
    Persisted progress of one prospect through the six stages.

    `timestamps` holds the ISO time each stage was last entered plus the
    `started` and `last_updated` markers. `transcripts` is the timestamped
    history of recorded call transcripts. `version` increments on every
    successful write and guards compare-and-swap.
    """
    prospect_id: str
    company_name: Optional[str] = Field(default=None)
    current_stage: WorkflowStage = Field(default=WorkflowStage.DASHBOARD)
    completed_stages: List[WorkflowStage] = Field(default_factory=list)
    stage_payloads: Dict[str, Any] = Field(default_factory=dict)
    timestamps: Dict[str, str] = Field(default_factory=dict)
    transcripts: List[Dict[str, Any]] = Field(default_factory=list)
    version: int = Field(default=0)


class WorkflowProgress(IntelPydanticBaseModel):
    current_stage: WorkflowStage
    completed_stages: List[WorkflowStage]
    progress_percent: int
    next_stage: Optional[WorkflowStage] = Field(default=None)


class AdvanceWorkflowRequest(IntelPydanticBaseModel):
    stage: str
    company_name: Optional[str] = Field(default=None, description="Required when the workflow does not exist yet")
    payload: Optional[Dict[str, Any]] = Field(default=None)


class RecordTranscriptRequest(IntelPydanticBaseModel):
    transcript: Dict[str, Any] = Field(..., description="Transcript text and call metadata")
    company_name: Optional[str] = Field(default=None, description="Required when the workflow does not exist yet")
