"""
Tests for report templates, the report generator and the LLM drafting backend.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import BackendError, ValidationError
from app.models.responses import ReportDraft, ReportSection
from app.services.llm_service import LLMService
from app.services.report_generator import ReportGenerator
from app.services.report_templates import MISSING_SECTION_TEXT, TEMPLATES, get_template
from tests.conftest import EchoReportBackend


class TestReportTemplates:
    """Template lookup and rendering."""

    def test_default_template_is_radiology(self):
        assert get_template(None).name == "radiology"

    @pytest.mark.parametrize("specialty", ["cardiology", "Cardiology", " cardiology "])
    def test_lookup_is_case_insensitive(self, specialty):
        assert get_template(specialty).name == "cardiology"

    def test_unknown_specialty_falls_back(self):
        assert get_template("dermatology").name == "radiology"

    def test_system_prompt_lists_sections_in_order(self):
        prompt = TEMPLATES["radiology"].system_prompt

        positions = [prompt.index(heading) for heading in TEMPLATES["radiology"].sections]
        assert positions == sorted(positions)

    def test_render_orders_sections_and_fills_gaps(self):
        draft = ReportDraft(
            sections=[
                ReportSection(heading="Impression", content="1. No acute abnormality."),
                ReportSection(heading="findings:", content="Lungs are clear."),
            ]
        )

        report = TEMPLATES["radiology"].render(draft)

        assert report.split("\n\n") == [
            f"CLINICAL HISTORY:\n{MISSING_SECTION_TEXT}",
            f"TECHNIQUE:\n{MISSING_SECTION_TEXT}",
            f"COMPARISON:\n{MISSING_SECTION_TEXT}",
            "FINDINGS:\nLungs are clear.",
            "IMPRESSION:\n1. No acute abnormality.",
        ]

    def test_render_keeps_extra_sections_last(self):
        draft = ReportDraft(sections=[ReportSection(heading="Recommendation", content="Follow-up CT in 3 months.")])

        report = TEMPLATES["cardiology"].render(draft)

        assert report.endswith("RECOMMENDATION:\nFollow-up CT in 3 months.")


class TestReportGenerator:
    """Validation, backend delegation and error mapping."""

    def test_report_contains_findings_and_markers(self, echo_backend):
        generator = ReportGenerator(echo_backend)

        report = asyncio.run(generator.generate("chest x-ray, no acute abnormality"))

        assert "no acute abnormality" in report
        assert "FINDINGS:" in report
        assert "IMPRESSION:" in report
        assert echo_backend.calls[0]["user_message"] == (
            "Generate a radiology report for these findings: chest x-ray, no acute abnormality"
        )

    def test_cardiology_template(self, echo_backend):
        generator = ReportGenerator(echo_backend)

        report = asyncio.run(generator.generate("normal LV function", specialty="cardiology"))

        assert "CONCLUSION:" in report
        assert "IMPRESSION:" not in report
        assert "echocardiography" in echo_backend.calls[0]["system_prompt"]

    @pytest.mark.parametrize("findings", [None, "", "   \n"])
    def test_missing_findings_rejected_without_backend_call(self, echo_backend, findings):
        generator = ReportGenerator(echo_backend)

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(generator.generate(findings))

        assert exc_info.value.message == "Findings are required"
        assert echo_backend.calls == []

    def test_backend_error_passes_through(self):
        backend = EchoReportBackend(fail_with=BackendError("Failed to generate report", details="timeout"))
        generator = ReportGenerator(backend)

        with pytest.raises(BackendError) as exc_info:
            asyncio.run(generator.generate("findings"))

        assert exc_info.value.details == "timeout"

    def test_unexpected_error_becomes_backend_error(self):
        generator = ReportGenerator(EchoReportBackend(fail_with=KeyError("choices")))

        with pytest.raises(BackendError) as exc_info:
            asyncio.run(generator.generate("findings"))

        assert exc_info.value.message == "Failed to generate report"
        assert "choices" in exc_info.value.details


class TestFormatTranscription:
    """Formatting finished transcriptions by template tag."""

    def test_known_template(self, echo_backend):
        generator = ReportGenerator(echo_backend)

        formatted = asyncio.run(generator.format_transcription("liver is normal", "pathology"))

        assert "SPECIMEN:" in formatted
        assert "liver is normal" in formatted

    def test_unknown_template_gets_generic_layout(self, echo_backend):
        generator = ReportGenerator(echo_backend)

        formatted = asyncio.run(generator.format_transcription("mild eczema on both hands", "dermatology"))

        system_prompt = echo_backend.calls[0]["system_prompt"]
        assert "according to the dermatology template" in system_prompt
        assert "a medical transcription assistant" in system_prompt
        assert "CLINICAL HISTORY" not in system_prompt
        assert formatted.startswith("FINDINGS:\n")
        assert "mild eczema on both hands" in formatted

    def test_missing_tag_uses_default(self, echo_backend):
        generator = ReportGenerator(echo_backend)

        asyncio.run(generator.format_transcription("normal study"))

        assert "radiology" in echo_backend.calls[0]["system_prompt"]

    @pytest.mark.parametrize("text", [None, "", "  "])
    def test_missing_text(self, echo_backend, text):
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(ReportGenerator(echo_backend).format_transcription(text, "radiology"))

        assert exc_info.value.message == "Text is required"
        assert echo_backend.calls == []

    def test_failure_reports_processing_failed(self):
        backend = EchoReportBackend(fail_with=BackendError("Failed to generate report", details="timeout"))

        with pytest.raises(BackendError) as exc_info:
            asyncio.run(ReportGenerator(backend).format_transcription("text", "dermatology"))

        assert exc_info.value.message == "Processing failed"
        assert exc_info.value.details == "timeout"


class TestLLMService:
    """OpenAI drafting backend with the completion call mocked."""

    @pytest.fixture
    def llm_service(self):
        return LLMService(api_key="test-openai-key")

    def test_draft_report_uses_structured_output(self, llm_service):
        draft = ReportDraft(sections=[ReportSection(heading="FINDINGS", content="Normal.")])
        llm_service.openai_client.chat.completions.create = AsyncMock(return_value=draft)

        result = asyncio.run(llm_service.draft_report("system", "user"))

        assert result is draft
        kwargs = llm_service.openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["response_model"] is ReportDraft
        assert kwargs["model"] == llm_service.default_model
        assert kwargs["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ]

    def test_provider_failure_becomes_backend_error(self, llm_service):
        llm_service.openai_client.chat.completions.create = AsyncMock(side_effect=TimeoutError("Request timed out"))

        with pytest.raises(BackendError) as exc_info:
            asyncio.run(llm_service.draft_report("system", "user"))

        assert exc_info.value.message == "Failed to generate report"
        assert exc_info.value.details == "Request timed out"
