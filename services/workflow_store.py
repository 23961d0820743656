import asyncio
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Optional

from google.cloud import bigquery

from engine.errors import ConcurrentModificationError, PersistenceFailure
from models.workflow import WorkflowState
from utils.async_utils import run_in_thread
from utils.loguru_setup import logger


class WorkflowStore(ABC):
    """
    Keyed storage for WorkflowState with compare-and-swap writes.

    `put` succeeds only when the stored version equals `expected_version`
    (0 meaning "no state stored yet") and then stores the state with
    version `expected_version + 1`.
    """

    @abstractmethod
    async def get(self, prospect_id: str) -> Optional[WorkflowState]:
        pass

    @abstractmethod
    async def put(self, prospect_id: str, state: WorkflowState, expected_version: int) -> WorkflowState:
        pass

    @abstractmethod
    async def delete(self, prospect_id: str) -> None:
        pass


class InMemoryWorkflowStore(WorkflowStore):
    """Process-local store for tests and local runs. Writes are serialized per prospect."""

    def __init__(self):
        self._states: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, prospect_id: str) -> Optional[WorkflowState]:
        raw = self._states.get(prospect_id)
        return WorkflowState.model_validate_json(raw) if raw else None

    async def put(self, prospect_id: str, state: WorkflowState, expected_version: int) -> WorkflowState:
        async with self._locks[prospect_id]:
            current = await self.get(prospect_id)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConcurrentModificationError(prospect_id, expected_version)

            stored = state.model_copy(update={'version': expected_version + 1})
            self._states[prospect_id] = stored.model_dump_json()
            return stored

    async def delete(self, prospect_id: str) -> None:
        async with self._locks[prospect_id]:
            self._states.pop(prospect_id, None)


class BigQueryWorkflowStore(WorkflowStore):
    """
    One row per prospect in `<project>.<dataset>.workflow_states`.

    Compare-and-swap uses conditional DML: an UPDATE guarded by the expected
    version, or an INSERT guarded by NOT EXISTS for the first write. Zero
    affected rows means another writer got there first.
    """

    TABLE_NAME = "workflow_states"

    def __init__(self, project: Optional[str], dataset: str, client: Optional[bigquery.Client] = None):
        self.project = project
        self.client = client or bigquery.Client(project=project, location='US')
        self.table_id = f"{project}.{dataset}.{self.TABLE_NAME}"

    def _run_query(self, query: str, params) -> bigquery.QueryJob:
        job_config = bigquery.QueryJobConfig(query_parameters=params)
        job = self.client.query(query, job_config=job_config)
        job.result()
        return job

    async def get(self, prospect_id: str) -> Optional[WorkflowState]:
        query = f"""
            SELECT state_json, version
            FROM `{self.table_id}`
            WHERE prospect_id = @prospect_id
            LIMIT 1
        """
        params = [bigquery.ScalarQueryParameter("prospect_id", "STRING", prospect_id)]

        try:
            job = await run_in_thread(self._run_query, query, params)
            rows = list(job.result())
        except Exception as e:
            logger.error(f"Error reading workflow state: {str(e)}", prospect_id=prospect_id)
            raise PersistenceFailure(f"Could not read workflow state for {prospect_id}") from e

        if not rows:
            return None

        row = rows[0]
        state_json = row.state_json if isinstance(row.state_json, str) else json.dumps(row.state_json)
        return WorkflowState.model_validate_json(state_json).model_copy(update={'version': row.version})

    async def put(self, prospect_id: str, state: WorkflowState, expected_version: int) -> WorkflowState:
        stored = state.model_copy(update={'version': expected_version + 1})
        now_ts = datetime.now(timezone.utc).isoformat()
        params = [
            bigquery.ScalarQueryParameter("prospect_id", "STRING", prospect_id),
            bigquery.ScalarQueryParameter("state_json", "STRING", stored.model_dump_json()),
            bigquery.ScalarQueryParameter("new_version", "INT64", stored.version),
            bigquery.ScalarQueryParameter("expected_version", "INT64", expected_version),
            bigquery.ScalarQueryParameter("updated_at", "TIMESTAMP", now_ts),
        ]

        if expected_version == 0:
            query = f"""
                INSERT INTO `{self.table_id}` (prospect_id, state_json, version, updated_at)
                SELECT @prospect_id, @state_json, @new_version, @updated_at
                FROM UNNEST([1])
                WHERE NOT EXISTS (
                    SELECT 1 FROM `{self.table_id}` WHERE prospect_id = @prospect_id
                )
            """
        else:
            query = f"""
                UPDATE `{self.table_id}`
                SET state_json = @state_json, version = @new_version, updated_at = @updated_at
                WHERE prospect_id = @prospect_id AND version = @expected_version
            """

        try:
            job = await run_in_thread(self._run_query, query, params)
        except Exception as e:
            logger.error(f"Error writing workflow state: {str(e)}", prospect_id=prospect_id)
            raise PersistenceFailure(f"Could not write workflow state for {prospect_id}") from e

        if not job.num_dml_affected_rows:
            raise ConcurrentModificationError(prospect_id, expected_version)
        return stored

    async def delete(self, prospect_id: str) -> None:
        query = f"DELETE FROM `{self.table_id}` WHERE prospect_id = @prospect_id"
        params = [bigquery.ScalarQueryParameter("prospect_id", "STRING", prospect_id)]
        try:
            await run_in_thread(self._run_query, query, params)
        except Exception as e:
            logger.error(f"Error deleting workflow state: {str(e)}", prospect_id=prospect_id)
            raise PersistenceFailure(f"Could not delete workflow state for {prospect_id}") from e
