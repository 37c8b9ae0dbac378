"""Per-learner roll-up of stored structured assessments.

Only attempts whose analysis succeeded contribute. Classification bands are
counted per scenario, and criteria met / not met are totalled per marking
domain within each scenario.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Tuple

from engines.assessment import CLASSIFICATION_LABELS, _percentage

logger = logging.getLogger(__name__)

HIGHLIGHT_DOMAINS = 3


def _new_scenario_entry(scenario_id: str, case_title: str) -> Dict[str, Any]:
    return {
        "scenario_id": scenario_id,
        "case_title": case_title,
        "total_attempts": 0,
        "pass_count": 0,
        "fail_count": 0,
        "classification_counts": {code: 0 for code in CLASSIFICATION_LABELS},
        "average_percentage": 0,
        "_percentage_sum": 0,
    }


def summarize_assessments(attempts: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fold completed attempts into band counts and domain performance.

    Each item needs ``scenario_id``, ``assessment`` and optionally
    ``case_title`` and ``id``.
    """
    scenarios: Dict[str, Dict[str, Any]] = {}
    domains: Dict[Tuple[str, str], Dict[str, Any]] = {}
    total = 0
    passes = 0

    for attempt in attempts:
        assessment = attempt.get("assessment")
        if not isinstance(assessment, Mapping) or assessment.get("analysis_status") != "success":
            continue
        scenario_id = str(attempt.get("scenario_id"))
        case_title = attempt.get("case_title") or scenario_id
        entry = scenarios.get(scenario_id)
        if entry is None:
            entry = scenarios[scenario_id] = _new_scenario_entry(scenario_id, case_title)

        total += 1
        entry["total_attempts"] += 1
        overall = assessment.get("overall_result") or {}
        code = overall.get("classification")
        if code in CLASSIFICATION_LABELS:
            entry["classification_counts"][code] += 1
            if code.endswith("_PASS"):
                entry["pass_count"] += 1
                passes += 1
            else:
                entry["fail_count"] += 1
        else:
            logger.warning("Unknown classification %r on attempt %s", code, attempt.get("id"))
        entry["_percentage_sum"] += int(overall.get("percentage_met") or 0)

        for domain in assessment.get("marking_domains") or []:
            name = domain.get("domain_name") or domain.get("domain_id") or "Unknown domain"
            key = (scenario_id, name)
            stats = domains.get(key)
            if stats is None:
                stats = domains[key] = {
                    "scenario_id": scenario_id,
                    "case_title": case_title,
                    "domain_id": domain.get("domain_id"),
                    "domain_name": name,
                    "appearances": 0,
                    "total_criteria": 0,
                    "criteria_met": 0,
                    "criteria_not_met": 0,
                    "percentage": 0,
                }
            stats["appearances"] += 1
            for criterion in domain.get("criteria") or []:
                stats["total_criteria"] += 1
                if criterion.get("met"):
                    stats["criteria_met"] += 1
                else:
                    stats["criteria_not_met"] += 1

    breakdown = []
    for entry in scenarios.values():
        entry["average_percentage"] = _percentage(entry.pop("_percentage_sum"), entry["total_attempts"] * 100)
        breakdown.append(entry)
    breakdown.sort(key=lambda e: (e["case_title"], e["scenario_id"]))

    performance = []
    for stats in domains.values():
        stats["percentage"] = _percentage(stats["criteria_met"], stats["total_criteria"])
        performance.append(stats)
    performance.sort(key=lambda s: (s["case_title"], s["percentage"], s["domain_name"]))

    ranked = sorted(performance, key=lambda s: (s["percentage"], s["domain_name"]))
    return {
        "total_assessed_attempts": total,
        "overall_summary": {
            "total_passes": passes,
            "total_fails": total - passes,
            "pass_rate": _percentage(passes, total),
        },
        "scenario_breakdown": breakdown,
        "domain_performance": performance,
        "weakest_domains": ranked[:HIGHLIGHT_DOMAINS],
        "strongest_domains": list(reversed(ranked[-HIGHLIGHT_DOMAINS:])),
    }
