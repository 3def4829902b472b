"""
LLM Service for report drafting
"""
import instructor
from openai import AsyncOpenAI
from typing import Optional
from app.config import settings
from app.core.exceptions import BackendError
from app.core.logging import get_logger
from app.models.responses import ReportDraft

logger = get_logger(__name__)


class LLMService:
    """Drafts structured reports with an OpenAI chat model."""

    def __init__(self, api_key: Optional[str] = None):
        # No automatic retries: a failed call is surfaced and the caller may retry manually
        self.openai_client = instructor.patch(
            AsyncOpenAI(
                api_key=api_key or settings.openai_api_key,
                timeout=settings.llm_timeout,
                max_retries=0,
            )
        )
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.default_model = settings.default_llm_model

    async def draft_report(
        self,
        system_prompt: str,
        user_message: str,
        model: Optional[str] = None,
    ) -> ReportDraft:
        """
        Send the system prompt and dictated findings to the model and return
        the report as titled sections.
        """
        model = model or self.default_model
        logger.info(f"Starting report drafting with model: {model}")

        try:
            draft = await self.openai_client.chat.completions.create(
                model=model,
                response_model=ReportDraft,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message}
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.error(f"Report drafting failed: {e}", exc_info=True)
            raise BackendError("Failed to generate report", details=str(e)) from e

        logger.info(f"Report drafted with {len(draft.sections)} sections.")
        return draft
