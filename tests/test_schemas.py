import json

import pytest
from pydantic import ValidationError

from schemas import (
    AssessmentResponse,
    CaseMaterials,
    CriterionJudgement,
    VoiceTranscript,
    extract_json_span,
    parse_json_safe,
)


def _payload() -> dict:
    return {
        "overall_feedback": "Covered the essentials.",
        "strengths": ["Open questions"],
        "improvements": [],
        "marking_domains": [
            {"domain_id": "d1", "criteria": [{"criterion_id": 7, "met": True, "evidence": "single quote"}]}
        ],
        "score": 88,
    }


def test_parse_json_safe_accepts_clean_json():
    result = parse_json_safe(json.dumps(_payload()), AssessmentResponse)

    judgement = result.marking_domains[0].criteria[0]
    assert judgement.criterion_id == "7"
    assert judgement.evidence == ["single quote"]


def test_parse_json_safe_extracts_brace_span_from_prose():
    noisy_text = "Sure! Here you go:\n```json\n" + json.dumps(_payload()) + "\n```\nLet me know."

    result = parse_json_safe(noisy_text, AssessmentResponse)

    assert result.overall_feedback == "Covered the essentials."


def test_parse_json_safe_rejects_schema_violations():
    with pytest.raises(ValidationError):
        parse_json_safe('{"strengths": ["x"]}', AssessmentResponse)
    with pytest.raises(ValueError):
        parse_json_safe("no braces at all", AssessmentResponse)


def test_extract_json_span():
    assert extract_json_span('prefix {"a": {"b": 1}} suffix') == '{"a": {"b": 1}}'
    with pytest.raises(ValueError):
        extract_json_span("} backwards {")


def test_evidence_is_truncated_and_cleaned():
    judgement = CriterionJudgement(criterion_id="c1", met=False, evidence=["a", " ", None, "b", "c", "d"], feedback=None)

    assert judgement.evidence == ["a", "b", "c"]
    assert judgement.feedback == ""


def test_voice_transcript_accepts_alias_and_field_name():
    by_alias = VoiceTranscript.model_validate({"messages": [], "capturedAt": "2025-01-01T10:00:00Z"})
    by_name = VoiceTranscript.model_validate({"messages": [], "captured_at": "2025-01-01T10:00:00Z"})

    assert by_alias.captured_at == by_name.captured_at == "2025-01-01T10:00:00Z"
    with pytest.raises(ValidationError):
        VoiceTranscript.model_validate({"messages": [{"role": "narrator", "content": "x", "timestamp": "t"}]})


def test_case_materials_categories_and_flags():
    materials = CaseMaterials(doctors_note=["note"], medical_notes=["bp"])

    assert [label for label, _ in materials.categories()] == ["DOCTOR'S NOTES", "PATIENT SCRIPT", "MEDICAL NOTES"]
    assert materials.provided() == {"doctors_note": True, "patient_script": False, "medical_notes": True}
