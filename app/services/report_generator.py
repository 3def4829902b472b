"""
Report generation: validate findings, apply a template, call the drafting backend
"""

import time
from typing import Optional, Protocol

from app.core.exceptions import BackendError, ValidationError
from app.core.logging import get_logger, audit_logger
from app.models.responses import ReportDraft
from app.services.report_templates import ReportTemplate, get_template, resolve_process_template

logger = get_logger(__name__)


class ReportBackend(Protocol):
    async def draft_report(self, system_prompt: str, user_message: str) -> ReportDraft:
        ...


class ReportGenerator:
    """Stateless: nothing from the findings or the report outlives the call."""

    def __init__(self, backend: ReportBackend):
        self.backend = backend

    async def generate(
        self,
        findings: Optional[str],
        specialty: Optional[str] = None,
        request_id: str = "-",
    ) -> str:
        if findings is None or not str(findings).strip():
            raise ValidationError("Findings are required")
        template = get_template(specialty)
        return await self._run(template, findings, request_id, failure_message="Failed to generate report")

    async def format_transcription(
        self,
        text: Optional[str],
        template_tag: Optional[str] = None,
        request_id: str = "-",
    ) -> str:
        """Format a finished transcription; unknown template tags get a generic layout."""
        if text is None or not str(text).strip():
            raise ValidationError("Text is required")
        template = resolve_process_template(template_tag)
        return await self._run(template, text, request_id, failure_message="Processing failed")

    async def _run(self, template: ReportTemplate, text: str, request_id: str, failure_message: str) -> str:
        logger.info(f"[{request_id}] Generating {template.name} report...")
        start_time = time.time()

        try:
            draft = await self.backend.draft_report(template.system_prompt, template.user_message(text))
        except BackendError as e:
            raise BackendError(failure_message, details=e.details) from e
        except Exception as e:
            logger.error(f"[{request_id}] Report backend failed: {e}", exc_info=True)
            raise BackendError(failure_message, details=str(e)) from e

        report = template.render(draft)
        audit_logger.log_report_generation(
            request_id=request_id,
            template=template.name,
            model_used=getattr(self.backend, "default_model", type(self.backend).__name__),
            findings_chars=len(text),
            processing_time_ms=int((time.time() - start_time) * 1000),
        )
        return report
