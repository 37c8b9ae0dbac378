"""Criterion-based assessment of a simulated consultation.

The engine builds a deterministic prompt pair from the case, its preparation
materials and marking scheme, makes exactly one completion call, and folds the
binary judgements it gets back into domain totals and a four-band
classification. It never raises for provider or parsing problems; those yield
a degraded assessment that still carries the marking structure.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from pydantic import ValidationError

from completion import CompletionError, CompletionProvider
from schemas import (
    AssessmentResponse,
    CaseInfo,
    CaseMaterials,
    CleanTranscript,
    CriterionJudgement,
    CriterionResult,
    DomainResult,
    MarkingDomainDef,
    OverallResult,
    PromptPair,
    StructuredAssessment,
    parse_json_safe,
)

logger = logging.getLogger(__name__)

CLASSIFICATION_LABELS: Dict[str, str] = {
    "CLEAR_PASS": "Clear Pass",
    "BORDERLINE_PASS": "Borderline Pass",
    "BORDERLINE_FAIL": "Borderline Fail",
    "CLEAR_FAIL": "Clear Fail",
}

NOT_EVALUATED_FEEDBACK = "Not evaluated"

FALLBACK_FEEDBACK = (
    "Technical issue occurred during AI analysis. Please contact support for manual review."
)
FALLBACK_STRENGTHS = [
    "Completed the consultation session",
    "Engaged with the simulated patient",
]
FALLBACK_IMPROVEMENTS = [
    "Manual review required due to technical issue",
    "Please contact support for a detailed assessment",
]

_RESPONSE_SCHEMA_EXAMPLE = {
    "overall_feedback": "2-4 sentence overall assessment of the consultation",
    "strengths": ["specific strength observed"],
    "improvements": ["specific, actionable improvement"],
    "marking_domains": [
        {
            "domain_id": "<domain id>",
            "criteria": [
                {
                    "criterion_id": "<criterion id>",
                    "met": True,
                    "evidence": ["verbatim quote from the transcript"],
                    "feedback": "why the criterion was or was not met",
                }
            ],
        }
    ],
}


def classify(criteria_met: int, total_criteria: int) -> str:
    """Map the fraction of criteria met onto a classification code.

    Bands use the exact fraction: above 75% is a clear pass, 50-75% a
    borderline pass, 25% up to (not including) 50% a borderline fail and
    anything lower a clear fail. No criteria counts as 0%.
    """
    if total_criteria <= 0:
        return "CLEAR_FAIL"
    fraction = criteria_met / total_criteria
    if fraction > 0.75:
        return "CLEAR_PASS"
    if fraction >= 0.50:
        return "BORDERLINE_PASS"
    if fraction >= 0.25:
        return "BORDERLINE_FAIL"
    return "CLEAR_FAIL"


def _percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(round(part / whole * 100))


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds or 0))
    return f"{seconds // 60} minutes {seconds % 60} seconds"


@dataclass
class AssessmentOutcome:
    assessment: StructuredAssessment
    prompts: PromptPair
    provider: Optional[str] = None
    model: Optional[str] = None


class AssessmentEngine:
    def __init__(self, provider: CompletionProvider):
        self.provider = provider

    # ---------------------------------------------------------------- prompts

    def build_system_prompt(
        self,
        case: CaseInfo,
        materials: CaseMaterials,
        domains: Sequence[MarkingDomainDef],
    ) -> str:
        lines = [
            "You are an expert clinical examiner assessing a student's performance in a "
            "simulated patient consultation. You judge each marking criterion strictly as "
            "met or not met, using only what is said in the transcript.",
            "",
            "PATIENT CASE:",
            f"- Patient Name: {case.patient_name}",
            f"- Case Title: {case.case_title}",
            f"- Diagnosis: {case.diagnosis}",
        ]
        if case.patient_age is not None:
            lines.append(f"- Patient Age: {case.patient_age}")
        if case.patient_gender:
            lines.append(f"- Patient Gender: {case.patient_gender}")

        lines.append("")
        lines.append("CASE MATERIALS:")
        for label, items in materials.categories():
            lines.append(f"{label}:")
            if items:
                lines.extend(f"- {item}" for item in items)
            else:
                lines.append("- (none provided)")

        lines.append("")
        lines.append("MARKING SCHEME:")
        for domain in domains:
            lines.append(f"Domain [{domain.id}] {domain.name}:")
            for criterion in domain.criteria:
                lines.append(f"  - Criterion [{criterion.id}] ({criterion.points} points): {criterion.text}")

        lines.extend(
            [
                "",
                "CLASSIFICATION (by share of criteria met):",
                "- Clear Pass: more than 75%",
                "- Borderline Pass: 50% to 75%",
                "- Borderline Fail: 25% to below 50%",
                "- Clear Fail: below 25%",
                "",
                "EVALUATION RULES:",
                "1. Every criterion listed above must appear in your response exactly once.",
                "2. Each criterion is binary: met is true or false, never partial.",
                "3. A criterion is met only if the transcript clearly shows it; when in doubt it is not met.",
                "4. Support each decision with 1-3 verbatim quotations from the transcript.",
                "5. Use the domain and criterion ids exactly as given.",
                "",
                "RESPONSE FORMAT:",
                "Respond with a single JSON object and nothing else, matching this shape:",
                json.dumps(_RESPONSE_SCHEMA_EXAMPLE, indent=2),
            ]
        )
        return "\n".join(lines)

    def build_user_prompt(self, transcript: CleanTranscript, case: CaseInfo, duration_seconds: int) -> str:
        conversation = "\n".join(
            f"[{msg.timestamp}] {msg.speaker.upper()}: {msg.message}" for msg in transcript.messages
        )
        return "\n".join(
            [
                "Evaluate this consultation against every marking criterion.",
                "",
                "CONSULTATION TRANSCRIPT:",
                conversation or "(no messages)",
                "",
                "SESSION DETAILS:",
                f"- Total Duration: {format_duration(duration_seconds)}",
                f"- Total Messages: {transcript.total_messages}",
                f"- Case: {case.case_title}",
                "",
                "Judge every criterion as strictly met or not met and quote the transcript "
                "verbatim as evidence. Respond in the required JSON format.",
            ]
        )

    # ------------------------------------------------------------ aggregation

    def aggregate(
        self,
        response: AssessmentResponse,
        domains: Sequence[MarkingDomainDef],
    ) -> StructuredAssessment:
        judgements: Dict[str, CriterionJudgement] = {}
        for domain_judgement in response.marking_domains:
            for judgement in domain_judgement.criteria:
                judgements.setdefault(judgement.criterion_id, judgement)

        known_ids = {c.id for d in domains for c in d.criteria}
        unknown = sorted(set(judgements) - known_ids)
        if unknown:
            logger.warning("Ignoring judgements for unknown criteria: %s", unknown)

        domain_results: list[DomainResult] = []
        total_criteria = 0
        criteria_met = 0
        total_points = 0
        achieved_points = 0

        for domain in domains:
            results: list[CriterionResult] = []
            domain_total = 0
            domain_achieved = 0
            for criterion in domain.criteria:
                judgement = judgements.get(criterion.id)
                met = bool(judgement and judgement.met)
                results.append(
                    CriterionResult(
                        criterion_id=criterion.id,
                        text=criterion.text,
                        points=criterion.points,
                        met=met,
                        evidence=list(judgement.evidence) if judgement else [],
                        feedback=judgement.feedback if judgement else NOT_EVALUATED_FEEDBACK,
                    )
                )
                domain_total += criterion.points
                if met:
                    domain_achieved += criterion.points
                    criteria_met += 1
                total_criteria += 1

            domain_results.append(
                DomainResult(
                    domain_id=domain.id,
                    domain_name=domain.name,
                    total_points=domain_total,
                    achieved_points=domain_achieved,
                    percentage=_percentage(domain_achieved, domain_total),
                    criteria=results,
                )
            )
            total_points += domain_total
            achieved_points += domain_achieved

        code = classify(criteria_met, total_criteria)
        score = _percentage(achieved_points, total_points)
        overall = OverallResult(
            classification=code,
            classification_label=CLASSIFICATION_LABELS[code],
            percentage_met=_percentage(criteria_met, total_criteria),
            total_criteria=total_criteria,
            criteria_met=criteria_met,
            criteria_not_met=total_criteria - criteria_met,
            score=score,
            total_possible_points=total_points,
            total_achieved_points=achieved_points,
        )
        return StructuredAssessment(
            analysis_status="success",
            overall_feedback=response.overall_feedback,
            strengths=list(response.strengths),
            improvements=list(response.improvements),
            overall_result=overall,
            marking_domains=domain_results,
        )

    def degraded(self, domains: Sequence[MarkingDomainDef], error: str) -> StructuredAssessment:
        """Failed-analysis payload carrying the marking structure but no verdict."""
        domain_results = [
            DomainResult(
                domain_id=domain.id,
                domain_name=domain.name,
                total_points=sum(c.points for c in domain.criteria),
                achieved_points=0,
                percentage=0,
                criteria=[
                    CriterionResult(
                        criterion_id=c.id,
                        text=c.text,
                        points=c.points,
                        met=False,
                        feedback=NOT_EVALUATED_FEEDBACK,
                    )
                    for c in domain.criteria
                ],
            )
            for domain in domains
        ]
        return StructuredAssessment(
            analysis_status="failed",
            analysis_failed=True,
            overall_feedback=FALLBACK_FEEDBACK,
            strengths=list(FALLBACK_STRENGTHS),
            improvements=list(FALLBACK_IMPROVEMENTS),
            marking_domains=domain_results,
            error=error,
        )

    # ------------------------------------------------------------------- run

    def assess(
        self,
        transcript: CleanTranscript,
        case: CaseInfo,
        materials: CaseMaterials,
        domains: Sequence[MarkingDomainDef],
        duration_seconds: int,
        *,
        correlation_token: Optional[str] = None,
    ) -> AssessmentOutcome:
        prompts = PromptPair(
            system_prompt=self.build_system_prompt(case, materials, domains),
            user_prompt=self.build_user_prompt(transcript, case, duration_seconds),
        )
        provider_name = getattr(self.provider, "provider_name", None)
        model = getattr(self.provider, "model", None)

        try:
            raw = self.provider.complete(prompts.system_prompt, prompts.user_prompt)
        except CompletionError as e:
            logger.error("Assessment completion failed token=%s: %s", correlation_token, e, exc_info=True)
            return AssessmentOutcome(self.degraded(domains, str(e)), prompts, provider_name, model)
        except Exception as e:
            logger.error(
                "Assessment provider raised unexpectedly token=%s: %s", correlation_token, e, exc_info=True
            )
            return AssessmentOutcome(
                self.degraded(domains, f"completion provider error: {e}"), prompts, provider_name, model
            )

        if not isinstance(raw, str):
            logger.error("Assessment provider returned %s token=%s", type(raw).__name__, correlation_token)
            return AssessmentOutcome(
                self.degraded(domains, "completion provider returned non-text output"), prompts, provider_name, model
            )

        try:
            response = parse_json_safe(raw, AssessmentResponse)
        except (ValidationError, ValueError) as e:
            logger.error(
                "Assessment response could not be parsed token=%s: %s | raw=%r",
                correlation_token,
                e,
                (raw or "")[:500],
            )
            return AssessmentOutcome(
                self.degraded(domains, f"invalid assessment response: {e}"), prompts, provider_name, model
            )

        return AssessmentOutcome(self.aggregate(response, domains), prompts, provider_name, model)
