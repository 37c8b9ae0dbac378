# app.py: attempt lifecycle & structured assessment service
# - Caller identity arrives from the upstream auth layer as X-Caller-Id / X-Caller-Role
# - Voice side writes transcripts back through /voice/transcripts (shared secret)

import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

import db
from lifecycle import (
    AttemptAlreadyCompletedError,
    AttemptCancelledError,
    AttemptError,
    AttemptLifecycleManager,
    AttemptNotFoundError,
    InsufficientCreditsError,
    LearnerNotFoundError,
    ScenarioNotFoundError,
    SessionStartError,
    TranscriptUnavailableError,
    build_lifecycle_manager,
)
from schemas import VoiceTranscript

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Attempt Assessment Service", version="1.0.0", lifespan=_lifespan)

_MANAGER: Optional[AttemptLifecycleManager] = None


def get_manager() -> AttemptLifecycleManager:
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = build_lifecycle_manager()
    return _MANAGER


def set_manager(manager: Optional[AttemptLifecycleManager]) -> None:
    global _MANAGER
    _MANAGER = manager


_ERROR_STATUS = (
    (LearnerNotFoundError, 404),
    (ScenarioNotFoundError, 404),
    (AttemptNotFoundError, 404),
    (InsufficientCreditsError, 402),
    (SessionStartError, 502),
    (TranscriptUnavailableError, 503),
    (AttemptAlreadyCompletedError, 409),
    (AttemptCancelledError, 409),
)


def _http_error(exc: AttemptError) -> HTTPException:
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


def _caller(request: Request) -> tuple[Optional[str], Optional[str]]:
    caller_id = (request.headers.get("x-caller-id") or "").strip() or None
    role = (request.headers.get("x-caller-role") or "").strip().lower() or None
    return caller_id, role


def _is_admin(request: Request) -> bool:
    return _caller(request)[1] == ADMIN_ROLE


# ---------- Bodies ----------
class CreateAttemptBody(BaseModel):
    learner_id: str = Field(min_length=1)
    scenario_id: str = Field(min_length=1)
    voice_id: Optional[str] = None


class CreditAdjustmentBody(BaseModel):
    delta: int
    reason: Optional[str] = None


class TranscriptWriteBody(BaseModel):
    correlation_token: str = Field(min_length=1)
    transcript: VoiceTranscript


# ---------- Attempts ----------
@app.post("/attempts", status_code=201)
def create_attempt(body: CreateAttemptBody, request: Request):
    caller_id, _ = _caller(request)
    try:
        return get_manager().create(
            body.learner_id,
            body.scenario_id,
            voice_id=body.voice_id,
            caller_identity=caller_id,
        )
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.patch("/attempts/{attempt_id}/complete-with-transcript")
def complete_attempt(attempt_id: str):
    try:
        return get_manager().complete_with_transcript(attempt_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.patch("/attempts/{attempt_id}/cancel")
def cancel_attempt(attempt_id: str):
    try:
        return get_manager().cancel(attempt_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.delete("/attempts/{attempt_id}", status_code=204)
def delete_attempt(attempt_id: str):
    try:
        get_manager().delete(attempt_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/attempts")
def list_attempts(
    completed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    return get_manager().list_attempts(completed=completed, limit=limit, offset=offset)


@app.get("/attempts/by-token/{correlation_token}")
def get_attempt_by_token(correlation_token: str):
    try:
        return get_manager().get_attempt_by_token(correlation_token)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/attempts/{attempt_id}")
def get_attempt(attempt_id: str, request: Request, debug: bool = False):
    include_prompts = debug and _is_admin(request)
    try:
        return get_manager().get_attempt(attempt_id, include_prompts=include_prompts)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/attempts/{attempt_id}/transcript")
def get_attempt_transcript(attempt_id: str):
    try:
        transcript = get_manager().get_transcript(attempt_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc
    if transcript is None:
        raise HTTPException(status_code=404, detail="transcript not available")
    return {"attempt_id": attempt_id, "transcript": transcript}


@app.get("/attempts/{attempt_id}/feedback")
def get_attempt_feedback(attempt_id: str):
    try:
        feedback = get_manager().get_feedback(attempt_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc
    if feedback is None:
        raise HTTPException(status_code=404, detail="feedback not available")
    return {"attempt_id": attempt_id, "feedback": feedback}


# ---------- Learners & scenarios ----------
@app.get("/learners/{learner_id}/attempts")
def list_learner_attempts(
    learner_id: str,
    completed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    try:
        return get_manager().list_learner_attempts(learner_id, completed=completed, limit=limit, offset=offset)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/scenarios/{scenario_id}/attempts")
def list_scenario_attempts(
    scenario_id: str,
    completed: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    try:
        return get_manager().list_scenario_attempts(scenario_id, completed=completed, limit=limit, offset=offset)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/learners/{learner_id}/attempt-stats")
def learner_attempt_stats(learner_id: str):
    try:
        return get_manager().learner_stats(learner_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/learners/{learner_id}/attempt-analytics")
def learner_attempt_analytics(learner_id: str):
    try:
        return get_manager().learner_analytics(learner_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.get("/scenarios/{scenario_id}/attempt-stats")
def scenario_attempt_stats(scenario_id: str):
    try:
        return get_manager().scenario_stats(scenario_id)
    except AttemptError as exc:
        raise _http_error(exc) from exc


@app.post("/learners/{learner_id}/credits")
def adjust_learner_credits(learner_id: str, body: CreditAdjustmentBody, request: Request):
    caller_id, _ = _caller(request)
    if not _is_admin(request):
        raise HTTPException(status_code=403, detail="admin role required")
    try:
        result = get_manager().adjust_credits(learner_id, body.delta)
    except AttemptError as exc:
        raise _http_error(exc) from exc
    logger.info(
        "Credit adjustment learner=%s delta=%d by=%s reason=%s",
        learner_id,
        body.delta,
        caller_id,
        body.reason,
    )
    return result


# ---------- Voice write-back ----------
@app.post("/voice/transcripts")
def record_voice_transcript(body: TranscriptWriteBody, request: Request):
    expected = os.getenv("BACKEND_SHARED_SECRET", "")
    if not expected:
        raise HTTPException(status_code=503, detail="transcript write-back not configured")
    provided = request.headers.get("x-backend-secret") or ""
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="invalid shared secret")
    try:
        attempt_id = get_manager().record_transcript(
            body.correlation_token,
            body.transcript.model_dump(mode="json"),
        )
    except AttemptError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "attempt_id": attempt_id}
