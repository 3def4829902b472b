"""
Report templates: system prompt, section order and rendering per specialty
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from app.config import settings, ReportTemplateName
from app.core.logging import get_logger
from app.models.responses import ReportDraft

logger = get_logger(__name__)

MISSING_SECTION_TEXT = "Not provided."

_COMMON_RULES = """
Rules:
- Use standard terminology for the specialty.
- Be concise but complete and always include relevant negatives.
- Use present tense for findings.
- Number the points of the final summary section (1., 2., ...).
- If the findings are normal, say so explicitly.
- Put each section's text in its own section; do not repeat the heading inside the text.
- Do not include patient names, MRNs, dates of birth or any other identifiers.
"""


@dataclass(frozen=True)
class ReportTemplate:
    name: str
    title: str
    role: str
    sections: Tuple[str, ...]
    instructions: str = ""

    @property
    def system_prompt(self) -> str:
        headings = "\n".join(f"   - {heading}" for heading in self.sections)
        return (
            f"You are {self.role} helping residents write structured {self.title}s.\n\n"
            f"{self.instructions}"
            f"Return the report as sections with exactly these headings, in this order:\n{headings}\n"
            f"{_COMMON_RULES}"
        )

    def user_message(self, findings: str) -> str:
        return f"Generate a {self.title} for these findings: {findings}"

    def render(self, draft: ReportDraft) -> str:
        """Lay the drafted sections out in template order with upper-case markers."""
        drafted: Dict[str, str] = {}
        extras: List[Tuple[str, str]] = []
        for section in draft.sections:
            heading = _normalize_heading(section.heading)
            content = (section.content or "").strip()
            if not heading or not content:
                continue
            if heading in self.sections:
                drafted.setdefault(heading, content)
            else:
                extras.append((heading, content))

        blocks = [f"{heading}:\n{drafted.get(heading, MISSING_SECTION_TEXT)}" for heading in self.sections]
        blocks.extend(f"{heading}:\n{content}" for heading, content in extras)
        return "\n\n".join(blocks)


def _normalize_heading(heading: str) -> str:
    return " ".join((heading or "").replace(":", " ").split()).upper()


TEMPLATES: Dict[str, ReportTemplate] = {
    ReportTemplateName.RADIOLOGY.value: ReportTemplate(
        name=ReportTemplateName.RADIOLOGY.value,
        title="radiology report",
        role="an expert radiologist assistant",
        sections=("CLINICAL HISTORY", "TECHNIQUE", "COMPARISON", "FINDINGS", "IMPRESSION"),
    ),
    ReportTemplateName.CARDIOLOGY.value: ReportTemplate(
        name=ReportTemplateName.CARDIOLOGY.value,
        title="echocardiography report",
        role="an expert cardiology assistant",
        sections=("INDICATION", "TECHNIQUE", "FINDINGS", "CONCLUSION"),
    ),
    ReportTemplateName.PATHOLOGY.value: ReportTemplate(
        name=ReportTemplateName.PATHOLOGY.value,
        title="surgical pathology report",
        role="an expert pathology assistant",
        sections=("CLINICAL HISTORY", "SPECIMEN", "GROSS DESCRIPTION", "FINDINGS", "CONCLUSION"),
    ),
}


def get_template(specialty: Optional[str]) -> ReportTemplate:
    """Template for a specialty tag; unknown or missing tags use the configured default."""
    default = TEMPLATES[settings.default_report_template.value]
    if not specialty:
        return default
    template = TEMPLATES.get(specialty.strip().lower())
    if template is None:
        logger.warning(f"Unknown report specialty '{specialty}', using {default.name} template")
        return default
    return template


GENERIC_SECTIONS = ("FINDINGS", "IMPRESSION")


def generic_template(tag: str) -> ReportTemplate:
    """Ad-hoc template for a transcription format we have no dedicated layout for."""
    tag = " ".join(tag.split())
    return ReportTemplate(
        name=tag,
        title=f"{tag} report",
        role="a medical transcription assistant",
        sections=GENERIC_SECTIONS,
        instructions=(
            f"Format the following transcription according to the {tag} template. "
            "Maintain medical accuracy and proper formatting.\n\n"
        ),
    )


def resolve_process_template(tag: Optional[str]) -> ReportTemplate:
    """Known tags use their layout; any other tag gets a generic template named after it."""
    if not tag or not tag.strip():
        return TEMPLATES[settings.default_report_template.value]
    return TEMPLATES.get(tag.strip().lower()) or generic_template(tag)
