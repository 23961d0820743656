import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

STRICT_ENVIRONMENTS = ('development', 'test')


@dataclass(frozen=True)
class Settings:
    """Runtime settings, read once from the environment (and .env when present)."""
    environment: str = 'development'
    log_level: str = 'DEBUG'
    signal_fetch_timeout_seconds: float = 15.0

    accounting_api_base_url: Optional[str] = None
    accounting_api_token: Optional[str] = None
    market_data_api_base_url: Optional[str] = None
    market_data_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    transcript_insight_model: str = 'gpt-4o-mini'

    persistence_backend: str = 'memory'
    google_cloud_project: Optional[str] = None
    bigquery_dataset: str = 'prospect_intelligence'
    workflow_write_attempts: int = 3

    @property
    def strict_invariants(self) -> bool:
        return self.environment in STRICT_ENVIRONMENTS

    @classmethod
    def from_env(cls) -> 'Settings':
        load_dotenv()
        return cls(
            environment=os.getenv('ENVIRONMENT', 'development'),
            log_level=os.getenv('LOG_LEVEL', 'DEBUG').upper(),
            signal_fetch_timeout_seconds=float(os.getenv('SIGNAL_FETCH_TIMEOUT_SECONDS', '15')),
            accounting_api_base_url=os.getenv('ACCOUNTING_API_BASE_URL'),
            accounting_api_token=os.getenv('ACCOUNTING_API_TOKEN'),
            market_data_api_base_url=os.getenv('MARKET_DATA_API_BASE_URL'),
            market_data_api_key=os.getenv('MARKET_DATA_API_KEY'),
            openai_api_key=os.getenv('OPENAI_API_KEY'),
            transcript_insight_model=os.getenv('TRANSCRIPT_INSIGHT_MODEL', 'gpt-4o-mini'),
            persistence_backend=os.getenv('PERSISTENCE_BACKEND', 'memory').lower(),
            google_cloud_project=os.getenv('GOOGLE_CLOUD_PROJECT'),
            bigquery_dataset=os.getenv('BIGQUERY_DATASET', 'prospect_intelligence'),
            workflow_write_attempts=int(os.getenv('WORKFLOW_WRITE_ATTEMPTS', '3')),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
