from typing import Any, Dict, Optional

import openai
from json_repair import loads as repair_loads
from openai import AsyncOpenAI
from pydantic import ValidationError

from engine.errors import UpstreamUnavailable
from models.signals import CompanyInfo, SignalSource, TranscriptSignal
from utils.loguru_setup import logger
from utils.retry_utils import RetryableError, RetryConfig, with_retry

OPENAI_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=2.0,
    max_delay=30.0,
    retryable_exceptions=[
        RetryableError,
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
        TimeoutError,
        ConnectionError
    ]
)

SYSTEM_PROMPT = (
    "You are a senior business development analyst specializing in B2B sales for fractional CFO services. "
    "Extract actionable business intelligence from discovery call transcripts. "
    "Always respond with valid JSON."
)

ANALYSIS_PROMPT = """Analyze this discovery call transcript with {company_name} (industry: {industry}).

TRANSCRIPT:
{transcript}

Return JSON with exactly this structure. Use empty lists when the call gives no evidence; never invent facts.
{{
  "pain_points": {{
    "operational": [], "financial": [], "strategic": [], "technology": []
  }},
  "business_objectives": {{
    "short_term": [], "long_term": [], "growth_targets": [], "efficiency": []
  }},
  "decision_makers": [{{"name": "", "role": "", "influence": "high|medium|low"}}],
  "urgency_signals": {{
    "timeline": "their stated timeline, verbatim where possible",
    "pressure_points": [], "catalysts": [],
    "budget": "any budget mention, verbatim where possible"
  }},
  "competitive_context": {{
    "alternatives": [], "differentiators": [], "threats": []
  }},
  "sales_intelligence": {{
    "buying_signals": [], "objections": [], "next_steps": []
  }}
}}"""


class TranscriptInsightService:
    """Turns raw call transcript text into a structured TranscriptSignal via OpenAI JSON mode."""

    def __init__(self, api_key: Optional[str], model_name: str = "gpt-4o-mini",
                 client: Optional[AsyncOpenAI] = None):
        self.model = model_name
        self.client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def close(self):
        if self.client is not None:
            await self.client.close()

    @with_retry(retry_config=OPENAI_RETRY_CONFIG, operation_name="_openai_extract_transcript_insight")
    async def _generate_insight(self, company_info: CompanyInfo, transcript_text: str) -> Dict[str, Any]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": ANALYSIS_PROMPT.format(
                    company_name=company_info.name,
                    industry=company_info.industry or "unknown",
                    transcript=transcript_text,
                )},
            ],
            response_format={"type": "json_object"},
            temperature=0.0
        )

        if not response.choices or not response.choices[0].message.content:
            raise RetryableError("Empty response from OpenAI")

        content = response.choices[0].message.content
        logger.debug("Transcript insight response received", response_chars=len(content))

        # Let json_repair handle truncated or fenced output
        parsed = repair_loads(content)
        if not isinstance(parsed, dict):
            raise RetryableError("Transcript insight response was not a JSON object")
        return parsed

    async def extract(self, company_info: CompanyInfo, transcript_text: str) -> Optional[TranscriptSignal]:
        """
        Extract structured sales signals from transcript text.

        Returns None when no model client is configured or the transcript is
        blank. Raises UpstreamUnavailable when the model call fails after
        retries or returns something that cannot be shaped into a TranscriptSignal.
        """
        if not self.configured:
            logger.debug("Transcript insight producer not configured, skipping transcript fetch")
            return None
        if not transcript_text or not transcript_text.strip():
            return None

        try:
            payload = await self._generate_insight(company_info, transcript_text)
        except (RetryableError, openai.OpenAIError, TimeoutError, ConnectionError) as e:
            raise UpstreamUnavailable(SignalSource.TRANSCRIPT, str(e)) from e

        try:
            return TranscriptSignal.model_validate(payload)
        except ValidationError as e:
            raise UpstreamUnavailable(SignalSource.TRANSCRIPT, f"Malformed insight payload: {e}") from e
