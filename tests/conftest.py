import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


def seed_reference_data(credit_balance: int = 3, is_privileged: bool = False, credit_cost: int = 1) -> dict:
    """Insert one learner, case, scenario and a two-domain marking scheme."""
    import db

    db.upsert_learner("learner-1", "Sam Student", "sam@example.com", credit_balance, is_privileged)
    db.upsert_case("case-1", "Chest pain in a 54 year old", "John Carter", "Stable angina", 54, "male")
    db.set_case_materials("case-1", "doctors_note", ["Patient presents with exertional chest pain."])
    db.set_case_materials("case-1", "patient_script", ["Pain started three weeks ago.", "Worse on stairs."])
    db.set_case_materials("case-1", "medical_notes", ["BP 142/88", "Smoker, 20 pack-years"])
    db.upsert_scenario(
        "scenario-1",
        "case-1",
        credit_cost=credit_cost,
        case_prompt="You are John Carter, a 54 year old with chest pain.",
        opening_line="Hello doctor, I've been having chest pains.",
        voice_model="Brian",
        time_limit_minutes=12,
    )
    db.upsert_marking_domain("dom-comm", "Communication")
    db.upsert_marking_domain("dom-hist", "History Taking")
    db.upsert_marking_criterion("crit-intro", "case-1", "dom-comm", "Introduces self and role", 5, 1)
    db.upsert_marking_criterion("crit-empathy", "case-1", "dom-comm", "Responds empathetically", 5, 2)
    db.upsert_marking_criterion("crit-onset", "case-1", "dom-hist", "Asks about onset of pain", 10, 1)
    db.upsert_marking_criterion("crit-risk", "case-1", "dom-hist", "Explores cardiac risk factors", 10, 2)
    return {"learner_id": "learner-1", "scenario_id": "scenario-1", "case_id": "case-1"}


@pytest.fixture
def seeded_db(temp_db):
    return seed_reference_data()


def voice_transcript(*utterances: tuple) -> dict:
    """Build a stored transcript envelope from ``(role, content, timestamp)`` tuples."""
    return {
        "version": "1",
        "messages": [
            {"role": role, "content": content, "sequence": idx, "timestamp": ts}
            for idx, (role, content, ts) in enumerate(utterances)
        ],
        "captured_at": "2025-01-01T10:05:00Z",
    }
