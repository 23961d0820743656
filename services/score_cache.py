import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from google.cloud import bigquery

from engine.errors import PersistenceFailure
from models.scores import IntelligenceResult
from utils.async_utils import run_in_thread
from utils.loguru_setup import logger


class ScoreCache(ABC):
    """Latest IntelligenceResult per prospect and analysis type."""

    @abstractmethod
    async def upsert_latest_score(self, prospect_id: str, analysis_type: str, result: IntelligenceResult) -> None:
        pass

    @abstractmethod
    async def get_latest_score(self, prospect_id: str,
                               analysis_type: Optional[str] = None) -> Optional[IntelligenceResult]:
        pass


class InMemoryScoreCache(ScoreCache):

    def __init__(self):
        self._results: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    async def upsert_latest_score(self, prospect_id: str, analysis_type: str, result: IntelligenceResult) -> None:
        async with self._lock:
            self._results[(prospect_id, analysis_type)] = (next(self._sequence), result.model_dump_json())

    async def get_latest_score(self, prospect_id: str,
                               analysis_type: Optional[str] = None) -> Optional[IntelligenceResult]:
        candidates: List[Tuple[int, str]] = [
            entry for (pid, a_type), entry in self._results.items()
            if pid == prospect_id and (analysis_type is None or a_type == analysis_type)
        ]
        if not candidates:
            return None
        _, raw = max(candidates, key=lambda entry: entry[0])
        return IntelligenceResult.model_validate_json(raw)


class BigQueryScoreCache(ScoreCache):
    """
    Appends one row per computed result to `<project>.<dataset>.intelligence_results`
    and reads back the most recent by created_at.
    """

    TABLE_NAME = "intelligence_results"

    def __init__(self, project: Optional[str], dataset: str, client: Optional[bigquery.Client] = None):
        self.project = project
        self.client = client or bigquery.Client(project=project, location='US')
        self.table_id = f"{project}.{dataset}.{self.TABLE_NAME}"

    async def upsert_latest_score(self, prospect_id: str, analysis_type: str, result: IntelligenceResult) -> None:
        row_to_insert = {
            "prospect_id": prospect_id,
            "analysis_type": analysis_type,
            "data_quality": str(result.data_quality),
            "health_score": result.scores.health_score,
            "closeability_score": result.scores.closeability_score,
            "result_payload": result.model_dump_json(),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            errors = await run_in_thread(self.client.insert_rows_json, self.table_id, [row_to_insert])
        except Exception as e:
            logger.error(f"Error storing intelligence result: {str(e)}", prospect_id=prospect_id)
            raise PersistenceFailure(f"Could not cache result for {prospect_id}") from e

        if errors:
            logger.error(f"BigQuery insert errors: {errors}", prospect_id=prospect_id)
            raise PersistenceFailure(f"BigQuery rejected cached result for {prospect_id}")

    def _query_latest(self, prospect_id: str, analysis_type: Optional[str]):
        query = f"""
            SELECT result_payload
            FROM `{self.table_id}`
            WHERE prospect_id = @prospect_id
        """
        params = [bigquery.ScalarQueryParameter("prospect_id", "STRING", prospect_id)]

        if analysis_type is not None:
            query += " AND analysis_type = @analysis_type"
            params.append(bigquery.ScalarQueryParameter("analysis_type", "STRING", analysis_type))

        query += """
            ORDER BY created_at DESC
            LIMIT 1
        """
        job_config = bigquery.QueryJobConfig(query_parameters=params)
        return list(self.client.query(query, job_config=job_config).result())

    async def get_latest_score(self, prospect_id: str,
                               analysis_type: Optional[str] = None) -> Optional[IntelligenceResult]:
        try:
            rows = await run_in_thread(self._query_latest, prospect_id, analysis_type)
        except Exception as e:
            logger.error(f"Error reading cached result: {str(e)}", prospect_id=prospect_id)
            raise PersistenceFailure(f"Could not read cached result for {prospect_id}") from e

        if not rows:
            logger.info("No cached result", prospect_id=prospect_id, analysis_type=analysis_type)
            return None

        payload = rows[0].result_payload
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        return IntelligenceResult.model_validate_json(payload)
