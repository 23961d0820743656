from typing import Any, Callable, Dict, List, Optional

from engine.errors import ConcurrentModificationError, InputValidationError, PersistenceFailure
from models.workflow import (
    STAGE_ORDER,
    WorkflowProgress,
    WorkflowStage,
    WorkflowState,
    utc_now_iso,
)
from services.workflow_store import WorkflowStore
from utils.loguru_setup import logger
from utils.retry_utils import RetryConfig, with_retry


def parse_stage(stage: str) -> WorkflowStage:
    try:
        return WorkflowStage(stage)
    except ValueError:
        raise InputValidationError(
            f"Unknown workflow stage '{stage}'. Expected one of: {', '.join(STAGE_ORDER)}"
        )


def next_stage_after(stage: WorkflowStage) -> Optional[WorkflowStage]:
    index = STAGE_ORDER.index(stage)
    return STAGE_ORDER[index + 1] if index + 1 < len(STAGE_ORDER) else None


class WorkflowManager:
    """
    Tracks a prospect through the six workflow stages.

    Advancing records the stage being left as completed (once), sets the new
    current stage and stores an optional payload for it. Re-entering an earlier
    stage is a correction and keeps later completed stages. Writes are
    compare-and-swap against the stored version; on conflict the state is
    reloaded and the change reapplied.
    """

    def __init__(self, store: WorkflowStore, write_attempts: int = 3):
        self.store = store
        self.retry_config = RetryConfig(
            max_attempts=write_attempts,
            base_delay=0.05,
            max_delay=1.0,
            retryable_exceptions=[ConcurrentModificationError]
        )

    def _apply_advance(self, state: Optional[WorkflowState], prospect_id: str, stage: WorkflowStage,
                       payload: Any, company_name: Optional[str]) -> WorkflowState:
        now = utc_now_iso()
        if state is None:
            if not company_name or not company_name.strip():
                raise InputValidationError("company_name is required to start a workflow")
            state = WorkflowState(
                prospect_id=prospect_id,
                company_name=company_name,
                timestamps={'started': now},
            )
        else:
            state = state.model_copy(deep=True)
            if company_name and not state.company_name:
                state.company_name = company_name

        if state.current_stage != stage and state.current_stage not in state.completed_stages:
            state.completed_stages.append(state.current_stage)

        state.current_stage = stage
        # Nothing follows the final stage, so entering it finishes it
        if next_stage_after(stage) is None and stage not in state.completed_stages:
            state.completed_stages.append(stage)
        state.timestamps[stage.value] = now
        state.timestamps['last_updated'] = now

        if payload is not None:
            state.stage_payloads[stage.value] = payload

        return state

    async def _write(self, prospect_id: str, apply: Callable[[Optional[WorkflowState]], WorkflowState],
                     operation_name: str) -> WorkflowState:
        """Load, apply and compare-and-swap, reapplying on conflict."""

        @with_retry(retry_config=self.retry_config, operation_name=operation_name)
        async def _load_apply_store() -> WorkflowState:
            current = await self.store.get(prospect_id)
            expected_version = current.version if current else 0
            return await self.store.put(prospect_id, apply(current), expected_version)

        try:
            return await _load_apply_store()
        except ConcurrentModificationError as e:
            raise PersistenceFailure(
                f"Workflow for {prospect_id} kept changing underneath {self.retry_config.max_attempts} write attempts"
            ) from e

    async def advance(self, prospect_id: str, stage: str, payload: Any = None,
                      company_name: Optional[str] = None) -> WorkflowState:
        if not prospect_id:
            raise InputValidationError("prospect_id is required")
        target = parse_stage(stage)

        state = await self._write(
            prospect_id,
            lambda current: self._apply_advance(current, prospect_id, target, payload, company_name),
            "advance_workflow",
        )

        logger.info(
            "Workflow advanced",
            stage=target.value,
            completed=len(state.completed_stages),
            version=state.version
        )
        return state

    async def record_transcript(self, prospect_id: str, transcript: Dict[str, Any],
                                company_name: Optional[str] = None) -> WorkflowState:
        """
        Append a timestamped transcript to the prospect's history and move the
        workflow to call-transcripts. The stage payload is the full history.
        """
        if not prospect_id:
            raise InputValidationError("prospect_id is required")
        if not transcript:
            raise InputValidationError("transcript is required")
        entry = {**transcript, 'timestamp': utc_now_iso()}

        def _apply(current: Optional[WorkflowState]) -> WorkflowState:
            history = (current.transcripts if current else []) + [entry]
            state = self._apply_advance(current, prospect_id, WorkflowStage.CALL_TRANSCRIPTS, history, company_name)
            state.transcripts = history
            return state

        state = await self._write(prospect_id, _apply, "record_transcript")
        logger.info("Transcript recorded", transcripts=len(state.transcripts), version=state.version)
        return state

    async def get_transcripts(self, prospect_id: str) -> List[Dict[str, Any]]:
        state = await self.store.get(prospect_id)
        return list(state.transcripts) if state else []

    async def get_state(self, prospect_id: str) -> Optional[WorkflowState]:
        return await self.store.get(prospect_id)

    async def get_progress(self, prospect_id: str) -> WorkflowProgress:
        state = await self.store.get(prospect_id)
        if state is None:
            return WorkflowProgress(
                current_stage=WorkflowStage.DASHBOARD,
                completed_stages=[],
                progress_percent=0,
                next_stage=WorkflowStage.DATA_EXTRACTION,
            )

        return WorkflowProgress(
            current_stage=state.current_stage,
            completed_stages=list(state.completed_stages),
            progress_percent=round(100 * len(state.completed_stages) / len(STAGE_ORDER)),
            next_stage=next_stage_after(state.current_stage),
        )

    async def reset(self, prospect_id: str) -> None:
        """Delete the workflow state together with its transcript history."""
        await self.store.delete(prospect_id)
        logger.info("Workflow reset")
