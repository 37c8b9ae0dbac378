"""Attempt lifecycle: billing, voice hand-off, transcript retrieval and assessment.

An attempt moves ``created -> in_progress -> completed | cancelled``. Every
transition of one attempt is serialised by a per-attempt lock inside this
process and guarded in the store by conditional updates on ``is_completed``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from pydantic import ValidationError

import db
from completion import get_completion_provider
from engines.analytics import summarize_assessments
from engines.assessment import AssessmentEngine
from env_validation import BILLING_MODES, get_env_choice, get_env_float, get_env_int
from schemas import CaseInfo, CaseMaterials, MarkingCriterionDef, MarkingDomainDef, StructuredAssessment
from transcript import parse_timestamp, transform_to_clean_format
from voice import DEFAULT_VOICE_ID, SessionConfig, VoiceOrchestrator, get_voice_orchestrator

logger = logging.getLogger(__name__)

PRIVILEGED_BALANCE_DISPLAY = 999999
CANCEL_REASON = "Manually cancelled"


# -------------- errors --------------
class AttemptError(Exception):
    """Base class for lifecycle failures surfaced to callers."""


class LearnerNotFoundError(AttemptError):
    pass


class ScenarioNotFoundError(AttemptError):
    pass


class AttemptNotFoundError(AttemptError):
    pass


class InsufficientCreditsError(AttemptError):
    pass


class SessionStartError(AttemptError):
    pass


class TranscriptUnavailableError(AttemptError):
    pass


class AttemptAlreadyCompletedError(AttemptError):
    pass


class AttemptCancelledError(AttemptError):
    pass


# -------------- billing --------------
class BillingMode(str, Enum):
    UPFRONT = "upfront"
    METERED = "metered"


@dataclass(frozen=True)
class AccountCapability:
    """Billing privileges of the learner account an attempt belongs to."""

    is_privileged: bool = False

    @classmethod
    def from_learner(cls, learner: Dict[str, Any]) -> "AccountCapability":
        return cls(is_privileged=bool(learner.get("is_privileged")))


def display_balance(capability: AccountCapability, balance: int) -> int:
    if capability.is_privileged:
        return PRIVILEGED_BALANCE_DISPLAY
    return int(balance)


def new_correlation_token(now: datetime) -> str:
    return f"att_{uuid.uuid4().hex}_{int(now.timestamp() * 1000)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    logger.info(message)


class AttemptLifecycleManager:
    def __init__(
        self,
        engine: AssessmentEngine,
        orchestrator: VoiceOrchestrator,
        *,
        store: Any = db,
        billing_mode: BillingMode = BillingMode.UPFRONT,
        metered_min_balance: int = 1,
        poll_attempts: int = 5,
        poll_delay: float = 1.0,
        default_voice_id: str = DEFAULT_VOICE_ID,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.engine = engine
        self.orchestrator = orchestrator
        self.store = store
        self.billing_mode = BillingMode(billing_mode)
        self.metered_min_balance = int(metered_min_balance)
        self.poll_attempts = max(1, int(poll_attempts))
        self.poll_delay = max(0.0, float(poll_delay))
        self.default_voice_id = default_voice_id
        self._sleep = sleep
        self._clock = clock
        # attempt_id -> [lock, holders]; entries go away when the last holder leaves
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # -------------- helpers --------------
    @contextmanager
    def _attempt_lock(self, attempt_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(attempt_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(attempt_id, None)

    def _require_learner(self, learner_id: str) -> Dict[str, Any]:
        learner = self.store.get_learner(learner_id)
        if learner is None:
            raise LearnerNotFoundError(f"learner {learner_id} not found")
        return learner

    def _require_scenario(self, scenario_id: str) -> Dict[str, Any]:
        scenario = self.store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(f"scenario {scenario_id} not found")
        return scenario

    def _require_attempt(self, attempt_id: str) -> Dict[str, Any]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"attempt {attempt_id} not found")
        return attempt

    @staticmethod
    def _ensure_open(attempt: Dict[str, Any]) -> None:
        if attempt["is_completed"] or attempt["status"] == "completed":
            raise AttemptAlreadyCompletedError(f"attempt {attempt['id']} is already completed")
        if attempt["status"] == "cancelled":
            raise AttemptCancelledError(f"attempt {attempt['id']} was cancelled")

    def _capability_for(self, learner_id: str) -> AccountCapability:
        learner = self.store.get_learner(learner_id)
        return AccountCapability.from_learner(learner or {})

    def _elapsed_seconds(self, attempt: Dict[str, Any], ended_at: datetime) -> int:
        started = parse_timestamp(attempt.get("started_at"))
        if started is None:
            return 0
        return max(0, int((ended_at - started).total_seconds()))

    def _end_session(self, attempt: Dict[str, Any]) -> Dict[str, Any]:
        token = attempt["correlation_token"]
        result = self.orchestrator.end(token)
        if result.get("status") == "error":
            logger.error(
                "Voice session end reported an error attempt=%s token=%s: %s",
                attempt["id"],
                token,
                result.get("message"),
            )
        return result

    def _poll_transcript(self, attempt: Dict[str, Any]) -> Any:
        """Read the stored raw transcript, retrying a bounded number of times."""
        for attempt_no in range(1, self.poll_attempts + 1):
            raw = self.store.get_raw_transcript(attempt["id"])
            if raw:
                return raw
            logger.debug(
                "Transcript not yet available attempt=%s poll=%d/%d",
                attempt["id"],
                attempt_no,
                self.poll_attempts,
            )
            if attempt_no < self.poll_attempts:
                self._sleep(self.poll_delay)
        _json_log(
            "transcript_unavailable",
            {
                "attempt_id": attempt["id"],
                "correlation_token": attempt["correlation_token"],
                "polls": self.poll_attempts,
            },
        )
        raise TranscriptUnavailableError(
            f"transcript for attempt {attempt['id']} not available after {self.poll_attempts} attempts"
        )

    def _assessment_inputs(self, scenario_id: str) -> Tuple[CaseInfo, CaseMaterials, list[MarkingDomainDef]]:
        scenario = self._require_scenario(scenario_id)
        case = self.store.get_case(scenario["case_id"]) or {}
        case_info = CaseInfo(
            case_id=scenario["case_id"],
            patient_name=case.get("patient_name") or "Unknown patient",
            case_title=case.get("title") or "Untitled case",
            diagnosis=case.get("diagnosis") or "Not specified",
            patient_age=case.get("patient_age"),
            patient_gender=case.get("patient_gender"),
        )
        materials = CaseMaterials(**self.store.get_case_materials(scenario["case_id"]))

        domains: Dict[str, MarkingDomainDef] = {}
        for row in self.store.list_marking_criteria(scenario["case_id"]):
            domain = domains.get(row["domain_id"])
            if domain is None:
                domain = MarkingDomainDef(id=row["domain_id"], name=row["domain_name"])
                domains[row["domain_id"]] = domain
            domain.criteria.append(
                MarkingCriterionDef(
                    id=row["id"],
                    text=row["text"],
                    points=row["points"],
                    display_order=row["display_order"],
                )
            )
        return case_info, materials, list(domains.values())

    def _raise_for_lost_race(self, attempt_id: str) -> None:
        current = self._require_attempt(attempt_id)
        self._ensure_open(current)
        raise AttemptError(f"attempt {attempt_id} could not be updated")

    # -------------- operations --------------
    def create(
        self,
        learner_id: str,
        scenario_id: str,
        *,
        voice_id: Optional[str] = None,
        caller_identity: Optional[str] = None,
    ) -> Dict[str, Any]:
        learner = self._require_learner(learner_id)
        scenario = self._require_scenario(scenario_id)
        capability = AccountCapability.from_learner(learner)
        cost = int(scenario.get("credit_cost") or 0)
        balance = int(learner.get("credit_balance") or 0)

        debit = 0
        if not capability.is_privileged:
            if self.billing_mode is BillingMode.UPFRONT:
                if balance < cost:
                    raise InsufficientCreditsError(
                        f"insufficient credits: {cost} required, {balance} available"
                    )
                debit = cost
            elif balance < self.metered_min_balance:
                raise InsufficientCreditsError(
                    f"insufficient credits: at least {self.metered_min_balance} required, {balance} available"
                )

        now = self._clock()
        attempt_id = str(uuid.uuid4())
        token = new_correlation_token(now)
        if not self.store.create_attempt(attempt_id, learner_id, scenario_id, token, now, debit=debit):
            raise InsufficientCreditsError(f"insufficient credits: {cost} required")

        _json_log(
            "attempt_created",
            {
                "attempt_id": attempt_id,
                "correlation_token": token,
                "learner_id": learner_id,
                "scenario_id": scenario_id,
                "billing_mode": self.billing_mode.value,
                "privileged": capability.is_privileged,
                "debited": debit,
            },
        )

        config = SessionConfig(
            system_prompt=scenario.get("case_prompt") or "",
            opening_line=scenario.get("opening_line"),
            voice_id=voice_id or scenario.get("voice_model") or self.default_voice_id,
        )
        try:
            connection = self.orchestrator.start(token, caller_identity or learner.get("name") or learner_id, config)
        except Exception as e:
            logger.error("Voice session start failed attempt=%s token=%s", attempt_id, token, exc_info=True)
            if self.billing_mode is BillingMode.UPFRONT:
                self.store.refund_and_delete_attempt(attempt_id, learner_id, debit)
            else:
                self.store.delete_attempt(attempt_id)
            _json_log(
                "attempt_start_compensated",
                {
                    "attempt_id": attempt_id,
                    "correlation_token": token,
                    "refunded": debit,
                    "error": str(e),
                },
            )
            raise SessionStartError(f"voice session could not be started: {e}") from e

        self.store.mark_attempt_in_progress(attempt_id)
        _json_log("attempt_in_progress", {"attempt_id": attempt_id, "correlation_token": token})

        refreshed = self.store.get_learner(learner_id) or learner
        return {
            "attempt": self._public_view(self.store.get_attempt(attempt_id)),
            "connection": {
                "connection_token": connection.connection_token,
                "correlation_token": token,
                "server_endpoint": connection.server_endpoint,
                "room_identifier": connection.room_identifier,
            },
            "credit_balance": display_balance(capability, refreshed.get("credit_balance") or 0),
        }

    def complete_with_transcript(self, attempt_id: str) -> Dict[str, Any]:
        with self._attempt_lock(attempt_id):
            attempt = self._require_attempt(attempt_id)
            self._ensure_open(attempt)
            token = attempt["correlation_token"]
            capability = self._capability_for(attempt["learner_id"])

            self._end_session(attempt)
            raw = self._poll_transcript(attempt)

            ended_at = self._clock()
            duration = self._elapsed_seconds(attempt, ended_at)
            case_info, materials, domains = self._assessment_inputs(attempt["scenario_id"])

            clean = None
            prompts = None
            provider = model = None
            try:
                clean = transform_to_clean_format(raw)
            except (ValidationError, ValueError, TypeError, KeyError) as e:
                logger.error("Transcript normalization failed attempt=%s token=%s: %s", attempt_id, token, e)
                assessment = self.engine.degraded(domains, f"transcript normalization failed: {e}")
            else:
                outcome = self.engine.assess(
                    clean,
                    case_info,
                    materials,
                    domains,
                    duration,
                    correlation_token=token,
                )
                assessment = outcome.assessment
                prompts = outcome.prompts
                provider, model = outcome.provider, outcome.model

            payload = self._feedback_payload(assessment, materials, domains, capability, provider, model)
            score = assessment.score if assessment.analysis_status == "success" else None

            saved = self.store.complete_attempt(
                attempt_id,
                ended_at=ended_at,
                duration_seconds=duration,
                transcript=clean.model_dump(mode="json") if clean is not None else None,
                assessment=payload,
                ai_prompt=prompts.model_dump() if prompts is not None else None,
                score=score,
            )
            if not saved:
                self._raise_for_lost_race(attempt_id)

            _json_log(
                "attempt_completed",
                {
                    "attempt_id": attempt_id,
                    "correlation_token": token,
                    "analysis_status": assessment.analysis_status,
                    "score": score,
                    "duration_seconds": duration,
                },
            )

        overall = assessment.overall_result
        return {
            "attempt": self._public_view(self.store.get_attempt(attempt_id)),
            "marking_summary": {
                "total_domains": len(domains),
                "total_criteria": sum(len(d.criteria) for d in domains),
                "criteria_met": overall.criteria_met if overall else None,
                "criteria_not_met": overall.criteria_not_met if overall else None,
                "classification": overall.classification_label if overall else None,
            },
            "processing_steps": {
                "session_ended": True,
                "transcript_retrieved": True,
                "transcript_normalized": clean is not None,
                "ai_model_called": prompts is not None,
                "feedback_generated": assessment.analysis_status == "success",
            },
        }

    def _feedback_payload(
        self,
        assessment: StructuredAssessment,
        materials: CaseMaterials,
        domains: list[MarkingDomainDef],
        capability: AccountCapability,
        provider: Optional[str],
        model: Optional[str],
    ) -> Dict[str, Any]:
        payload = assessment.model_dump(mode="json")
        payload.update(
            {
                "case_materials_provided": materials.provided(),
                "total_marking_criteria": sum(len(d.criteria) for d in domains),
                "marking_domains_count": len(domains),
                "is_privileged_attempt": capability.is_privileged,
                "provider": provider,
                "model": model,
            }
        )
        return payload

    def cancel(self, attempt_id: str) -> Dict[str, Any]:
        with self._attempt_lock(attempt_id):
            attempt = self._require_attempt(attempt_id)
            self._ensure_open(attempt)
            token = attempt["correlation_token"]
            capability = self._capability_for(attempt["learner_id"])

            self._end_session(attempt)
            raw = self.store.get_raw_transcript(attempt_id)
            transcript: Any = None
            if raw:
                try:
                    transcript = transform_to_clean_format(raw).model_dump(mode="json")
                except (ValidationError, ValueError, TypeError, KeyError) as e:
                    logger.warning("Keeping raw transcript for cancelled attempt=%s token=%s: %s", attempt_id, token, e)
                    transcript = raw

            ended_at = self._clock()
            duration = self._elapsed_seconds(attempt, ended_at)
            marker = {
                "cancelled": True,
                "reason": CANCEL_REASON,
                "timestamp": ended_at.isoformat(),
                "is_privileged_attempt": capability.is_privileged,
            }
            saved = self.store.cancel_attempt(
                attempt_id,
                ended_at=ended_at,
                duration_seconds=duration,
                transcript=transcript,
                assessment=marker,
            )
            if not saved:
                self._raise_for_lost_race(attempt_id)

            _json_log(
                "attempt_cancelled",
                {"attempt_id": attempt_id, "correlation_token": token, "duration_seconds": duration},
            )
        return self._public_view(self.store.get_attempt(attempt_id))

    def delete(self, attempt_id: str) -> Dict[str, Any]:
        with self._attempt_lock(attempt_id):
            attempt = self._require_attempt(attempt_id)
            token = attempt["correlation_token"]
            if attempt["status"] in ("created", "in_progress"):
                self._end_session(attempt)

            capability = self._capability_for(attempt["learner_id"])
            refunded = 0
            if not attempt["is_completed"] and not capability.is_privileged:
                scenario = self.store.get_scenario(attempt["scenario_id"]) or {}
                refunded = int(scenario.get("credit_cost") or 0)
                deleted = self.store.refund_and_delete_attempt(attempt_id, attempt["learner_id"], refunded)
            else:
                deleted = self.store.delete_attempt(attempt_id)
            if not deleted:
                raise AttemptNotFoundError(f"attempt {attempt_id} not found")

            _json_log(
                "attempt_deleted",
                {
                    "attempt_id": attempt_id,
                    "correlation_token": token,
                    "refunded": refunded,
                    "privileged": capability.is_privileged,
                },
            )
        return {"attempt_id": attempt_id, "refunded": refunded}

    # -------------- transcript write-back --------------
    def record_transcript(self, correlation_token: str, payload: Dict[str, Any]) -> str:
        attempt_id = self.store.save_raw_transcript(correlation_token, payload)
        if attempt_id is None:
            raise AttemptNotFoundError(f"no open attempt for token {correlation_token}")
        _json_log(
            "transcript_recorded",
            {
                "attempt_id": attempt_id,
                "correlation_token": correlation_token,
                "messages": len(payload.get("messages") or []),
            },
        )
        return attempt_id

    # -------------- credits --------------
    def adjust_credits(self, learner_id: str, delta: int) -> Dict[str, Any]:
        balance = self.store.adjust_credits(learner_id, delta)
        if balance is None:
            raise LearnerNotFoundError(f"learner {learner_id} not found")
        _json_log("credits_adjusted", {"learner_id": learner_id, "delta": delta, "balance": balance})
        return {"learner_id": learner_id, "credit_balance": balance}

    # -------------- reads --------------
    @staticmethod
    def _public_view(attempt: Optional[Dict[str, Any]], include_prompts: bool = False) -> Dict[str, Any]:
        view = dict(attempt or {})
        view.pop("raw_transcript", None)
        if not include_prompts:
            view.pop("ai_prompt", None)
        return view

    def get_attempt(self, attempt_id: str, *, include_prompts: bool = False) -> Dict[str, Any]:
        return self._public_view(self._require_attempt(attempt_id), include_prompts)

    def get_attempt_by_token(self, correlation_token: str) -> Dict[str, Any]:
        attempt = self.store.get_attempt_by_token(correlation_token)
        if attempt is None:
            raise AttemptNotFoundError(f"no attempt for token {correlation_token}")
        return self._public_view(attempt)

    def list_attempts(self, **filters: Any) -> list[Dict[str, Any]]:
        return [self._public_view(a) for a in self.store.list_attempts(**filters)]

    def list_learner_attempts(self, learner_id: str, **filters: Any) -> list[Dict[str, Any]]:
        self._require_learner(learner_id)
        return self.list_attempts(learner_id=learner_id, **filters)

    def list_scenario_attempts(self, scenario_id: str, **filters: Any) -> list[Dict[str, Any]]:
        self._require_scenario(scenario_id)
        return self.list_attempts(scenario_id=scenario_id, **filters)

    def get_transcript(self, attempt_id: str) -> Optional[Any]:
        return self._require_attempt(attempt_id).get("transcript")

    def get_feedback(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return self._require_attempt(attempt_id).get("assessment")

    def learner_stats(self, learner_id: str) -> Dict[str, Any]:
        learner = self._require_learner(learner_id)
        capability = AccountCapability.from_learner(learner)
        stats = self.store.learner_attempt_stats(learner_id)
        stats["credit_balance"] = display_balance(capability, learner.get("credit_balance") or 0)
        stats["is_privileged"] = capability.is_privileged
        return stats

    def learner_analytics(self, learner_id: str) -> Dict[str, Any]:
        learner = self._require_learner(learner_id)
        summary = summarize_assessments(self.store.list_completed_assessments(learner_id))
        return {"learner_id": learner_id, "learner_name": learner.get("name"), **summary}

    def scenario_stats(self, scenario_id: str) -> Dict[str, Any]:
        self._require_scenario(scenario_id)
        return self.store.scenario_attempt_stats(scenario_id)


def build_lifecycle_manager() -> AttemptLifecycleManager:
    """Assemble a manager from environment configuration."""
    return AttemptLifecycleManager(
        engine=AssessmentEngine(get_completion_provider()),
        orchestrator=get_voice_orchestrator(),
        billing_mode=BillingMode(get_env_choice("BILLING_MODE", BILLING_MODES, "upfront")),
        metered_min_balance=get_env_int("METERED_MIN_BALANCE", 1),
        poll_attempts=get_env_int("TRANSCRIPT_POLL_ATTEMPTS", 5),
        poll_delay=get_env_float("TRANSCRIPT_POLL_DELAY_SECONDS", 1.0),
        default_voice_id=os.getenv("DEFAULT_VOICE_ID") or DEFAULT_VOICE_ID,
    )
