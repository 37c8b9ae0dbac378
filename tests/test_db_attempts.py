"""Test cases for attempt persistence."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import db

STARTED = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


def _create(attempt_id="a-1", token="att_1", debit=0, started=STARTED):
    return db.create_attempt(attempt_id, "learner-1", "scenario-1", token, started, debit=debit)


def test_create_attempt_debits_atomically(seeded_db):
    assert _create(debit=1)

    attempt = db.get_attempt("a-1")
    assert attempt["status"] == "created"
    assert attempt["is_completed"] is False
    assert attempt["score"] is None
    assert db.get_learner("learner-1")["credit_balance"] == 2


def test_create_attempt_rejects_when_balance_too_low(seeded_db):
    assert not _create(debit=5)

    assert db.get_attempt("a-1") is None
    assert db.get_learner("learner-1")["credit_balance"] == 3


def test_balance_check_constraint(seeded_db):
    with pytest.raises(sqlite3.IntegrityError):
        db._exec("UPDATE learners SET credit_balance = -1 WHERE id = ?", ("learner-1",))


def test_refund_and_delete_restores_balance(seeded_db):
    _create(debit=1)

    assert db.refund_and_delete_attempt("a-1", "learner-1", 1)
    assert db.get_attempt("a-1") is None
    assert db.get_learner("learner-1")["credit_balance"] == 3
    # second call finds nothing to refund
    assert not db.refund_and_delete_attempt("a-1", "learner-1", 1)
    assert db.get_learner("learner-1")["credit_balance"] == 3


def test_complete_is_conditional(seeded_db):
    _create()
    assert db.mark_attempt_in_progress("a-1")

    kwargs = dict(
        ended_at=STARTED + timedelta(minutes=5),
        duration_seconds=300,
        transcript={"messages": [], "duration": 0, "total_messages": 0},
        assessment={"analysis_status": "success"},
        ai_prompt={"system_prompt": "s", "user_prompt": "u"},
        score=80,
    )
    assert db.complete_attempt("a-1", **kwargs)
    assert not db.complete_attempt("a-1", **{**kwargs, "score": 10})
    assert not db.cancel_attempt(
        "a-1", ended_at=STARTED, duration_seconds=0, transcript=None, assessment={"cancelled": True}
    )

    attempt = db.get_attempt("a-1")
    assert attempt["status"] == "completed"
    assert attempt["is_completed"] is True
    assert attempt["score"] == 80
    assert attempt["duration_seconds"] == 300
    assert attempt["ended_at"].startswith("2025-01-01T10:05:00")
    assert attempt["assessment"] == {"analysis_status": "success"}
    assert attempt["ai_prompt"]["user_prompt"] == "u"


def test_raw_transcript_write_back_by_token(seeded_db):
    _create()

    assert db.save_raw_transcript("att_1", {"messages": [{"role": "user"}]}) == "a-1"
    assert db.save_raw_transcript("att_missing", {"messages": []}) is None
    assert db.get_raw_transcript("a-1") == {"messages": [{"role": "user"}]}
    assert db.get_attempt_by_token("att_1")["id"] == "a-1"


def test_adjust_credits_never_below_zero(seeded_db):
    assert db.adjust_credits("learner-1", 4) == 7
    assert db.adjust_credits("learner-1", -100) == 0
    assert db.adjust_credits("nobody", 1) is None


def test_marking_criteria_order_by_domain_name_then_display_order(seeded_db):
    db.upsert_marking_domain("dom-aaa", "Assessment")
    db.upsert_marking_criterion("crit-z", "case-1", "dom-aaa", "Checks vitals", 2, 9)
    db.upsert_marking_criterion("crit-a", "case-1", "dom-aaa", "Explains plan", 2, 1)

    rows = db.list_marking_criteria("case-1")

    assert [r["id"] for r in rows] == ["crit-a", "crit-z", "crit-intro", "crit-empathy", "crit-onset", "crit-risk"]
    assert rows[0]["domain_name"] == "Assessment"


def test_case_materials_replace_per_category(seeded_db):
    db.set_case_materials("case-1", "medical_notes", ["HbA1c 48"])

    materials = db.get_case_materials("case-1")

    assert materials["medical_notes"] == ["HbA1c 48"]
    assert materials["patient_script"] == ["Pain started three weeks ago.", "Worse on stairs."]
    with pytest.raises(ValueError):
        db.set_case_materials("case-1", "lab_results", ["x"])


def test_list_attempts_filters_and_paginates(seeded_db):
    for idx in range(3):
        _create(f"a-{idx}", f"att_{idx}", started=STARTED + timedelta(minutes=idx))
    db.complete_attempt(
        "a-0",
        ended_at=STARTED,
        duration_seconds=60,
        transcript=None,
        assessment={"analysis_status": "success"},
        ai_prompt=None,
        score=70,
    )

    assert [a["id"] for a in db.list_attempts()] == ["a-2", "a-1", "a-0"]
    assert [a["id"] for a in db.list_attempts(completed=True)] == ["a-0"]
    assert [a["id"] for a in db.list_attempts(completed=False, limit=1, offset=1)] == ["a-1"]
    assert [a["id"] for a in db.list_attempts(learner_id="someone-else")] == []
    assert len(db.list_attempts(scenario_id="scenario-1")) == 3


def test_stats(seeded_db):
    db.upsert_learner("learner-2", "Alex", None, 5)
    _create("a-1", "att_1")
    _create("a-2", "att_2")
    db.create_attempt("a-3", "learner-2", "scenario-1", "att_3", STARTED)
    for attempt_id, score, duration in (("a-1", 40, 100), ("a-3", 90, 300)):
        db.complete_attempt(
            attempt_id,
            ended_at=STARTED,
            duration_seconds=duration,
            transcript=None,
            assessment={},
            ai_prompt=None,
            score=score,
        )

    learner = db.learner_attempt_stats("learner-1")
    assert learner["total_attempts"] == 2
    assert learner["completed_attempts"] == 1
    assert learner["incomplete_attempts"] == 1
    assert learner["completion_rate"] == 50.0
    assert learner["score"] == {"average": 40.0, "min": 40, "max": 40}
    assert learner["duration_seconds"]["max"] == 100

    scenario = db.scenario_attempt_stats("scenario-1")
    assert scenario["total_attempts"] == 3
    assert scenario["unique_learners"] == 2
    assert scenario["score"]["average"] == 65.0

    empty = db.learner_attempt_stats("learner-unknown")
    assert empty["total_attempts"] == 0
    assert empty["completion_rate"] == 0.0
    assert empty["score"]["average"] is None


def test_list_completed_assessments_skips_open_and_cancelled(seeded_db):
    for attempt_id, token in (("a-1", "att_1"), ("a-2", "att_2"), ("a-3", "att_3")):
        _create(attempt_id, token)
    db.complete_attempt(
        "a-1",
        ended_at=STARTED,
        duration_seconds=60,
        transcript=None,
        assessment={"analysis_status": "success", "overall_result": {"classification": "CLEAR_PASS"}},
        ai_prompt=None,
        score=90,
    )
    db.cancel_attempt("a-2", ended_at=STARTED, duration_seconds=0, transcript=None, assessment={"cancelled": True})

    rows = db.list_completed_assessments("learner-1")

    assert [row["id"] for row in rows] == ["a-1"]
    assert rows[0]["case_title"] == "Chest pain in a 54 year old"
    assert rows[0]["assessment"]["overall_result"]["classification"] == "CLEAR_PASS"
    assert db.list_completed_assessments("ghost") == []
