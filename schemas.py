"""Pydantic schemas for transcripts, model output, and structured assessments."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "VoiceUtterance",
    "VoiceTranscript",
    "CleanTranscriptMessage",
    "CleanTranscript",
    "CaseInfo",
    "CaseMaterials",
    "MarkingCriterionDef",
    "MarkingDomainDef",
    "CriterionJudgement",
    "DomainJudgement",
    "AssessmentResponse",
    "CriterionResult",
    "DomainResult",
    "OverallResult",
    "StructuredAssessment",
    "PromptPair",
    "ClassificationCode",
    "extract_json_span",
    "parse_json_safe",
]

ClassificationCode = Literal["CLEAR_PASS", "BORDERLINE_PASS", "BORDERLINE_FAIL", "CLEAR_FAIL"]

MAX_EVIDENCE_QUOTES = 3


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------


class VoiceUtterance(BaseModel):
    """One raw utterance as written back by the voice session."""

    role: Literal["user", "assistant"] = Field(
        description="'user' is the learner on the call, 'assistant' the simulated patient.",
    )
    content: str = ""
    sequence: int = 0
    timestamp: str = Field(default="", description="ISO-8601 timestamp of the utterance; blank when unknown.")

    @field_validator("content", "timestamp", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


class VoiceTranscript(BaseModel):
    version: str = "1"
    messages: list[VoiceUtterance] = Field(default_factory=list)
    captured_at: str | None = Field(default=None, alias="capturedAt")

    model_config = {
        "populate_by_name": True,
    }


class CleanTranscriptMessage(BaseModel):
    timestamp: str
    speaker: Literal["student", "ai_patient"]
    message: str


class CleanTranscript(BaseModel):
    messages: list[CleanTranscriptMessage] = Field(default_factory=list)
    duration: int = Field(default=0, ge=0, description="Seconds between first and last message.")
    total_messages: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Case and marking reference data
# ---------------------------------------------------------------------------


class CaseInfo(BaseModel):
    case_id: str | None = None
    patient_name: str
    case_title: str
    diagnosis: str
    patient_age: int | None = None
    patient_gender: str | None = None


class CaseMaterials(BaseModel):
    """Scenario preparation material grouped by category."""

    doctors_note: list[str] = Field(default_factory=list)
    patient_script: list[str] = Field(default_factory=list)
    medical_notes: list[str] = Field(default_factory=list)

    def categories(self) -> list[tuple[str, list[str]]]:
        return [
            ("DOCTOR'S NOTES", self.doctors_note),
            ("PATIENT SCRIPT", self.patient_script),
            ("MEDICAL NOTES", self.medical_notes),
        ]

    def provided(self) -> Dict[str, bool]:
        return {
            "doctors_note": bool(self.doctors_note),
            "patient_script": bool(self.patient_script),
            "medical_notes": bool(self.medical_notes),
        }


class MarkingCriterionDef(BaseModel):
    id: str
    text: str
    points: int = Field(ge=0)
    display_order: int = 0


class MarkingDomainDef(BaseModel):
    id: str
    name: str
    criteria: list[MarkingCriterionDef] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Model response contract
# ---------------------------------------------------------------------------


class CriterionJudgement(BaseModel):
    criterion_id: str
    met: bool
    evidence: list[str] = Field(
        default_factory=list,
        description="Up to three verbatim transcript quotations supporting the decision.",
    )
    feedback: str = ""

    @field_validator("criterion_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value).strip()

    @field_validator("evidence", mode="before")
    @classmethod
    def _coerce_evidence(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        quotes = [str(item).strip() for item in value if item is not None and str(item).strip()]
        return quotes[:MAX_EVIDENCE_QUOTES]

    @field_validator("feedback", mode="before")
    @classmethod
    def _coerce_feedback(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)


class DomainJudgement(BaseModel):
    domain_id: str | None = None
    criteria: list[CriterionJudgement] = Field(default_factory=list)


class AssessmentResponse(BaseModel):
    """Shape the completion provider is instructed to return."""

    overall_feedback: str
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    marking_domains: list[DomainJudgement] = Field(default_factory=list)

    model_config = {
        "extra": "ignore",
    }


# ---------------------------------------------------------------------------
# Structured assessment stored on the attempt
# ---------------------------------------------------------------------------


class CriterionResult(BaseModel):
    criterion_id: str
    text: str
    points: int
    met: bool
    evidence: list[str] = Field(default_factory=list)
    feedback: str = ""


class DomainResult(BaseModel):
    domain_id: str
    domain_name: str
    total_points: int = Field(ge=0)
    achieved_points: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)
    criteria: list[CriterionResult] = Field(default_factory=list)


class OverallResult(BaseModel):
    classification: ClassificationCode
    classification_label: str
    percentage_met: int = Field(ge=0, le=100)
    total_criteria: int = Field(ge=0)
    criteria_met: int = Field(ge=0)
    criteria_not_met: int = Field(ge=0)
    score: int = Field(ge=0, le=100)
    total_possible_points: int = Field(ge=0)
    total_achieved_points: int = Field(ge=0)


class StructuredAssessment(BaseModel):
    analysis_status: Literal["success", "failed"]
    analysis_failed: bool = False
    overall_feedback: str
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    overall_result: OverallResult | None = None
    marking_domains: list[DomainResult] = Field(default_factory=list)
    error: str | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def score(self) -> int | None:
        if self.overall_result is None:
            return None
        return self.overall_result.score


class PromptPair(BaseModel):
    system_prompt: str
    user_prompt: str


# ---------------------------------------------------------------------------
# Tolerant parsing of provider output
# ---------------------------------------------------------------------------

_T = TypeVar("_T", bound=BaseModel)


def extract_json_span(text: str) -> str:
    """Return the text between the first ``{`` and the last ``}`` inclusive."""

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        raise ValueError("No JSON object found in provided text")
    return text[start : end + 1]


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, falling back to the outermost brace span.

    Providers without a JSON response mode tend to wrap the payload in prose or
    Markdown fences; only the brace-delimited span is validated in that case.
    """

    if text is None:
        raise ValueError("Empty response text")

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet = extract_json_span(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    return model.model_validate_json(snippet)
