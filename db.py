import json
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

MATERIAL_CATEGORIES = ("doctors_note", "patient_script", "medical_notes")
ATTEMPT_STATUSES = ("created", "in_progress", "completed", "cancelled")

_ATTEMPT_JSON_FIELDS = ("assessment", "raw_transcript", "transcript", "ai_prompt")


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              id             TEXT PRIMARY KEY,
              name           TEXT,
              email          TEXT,
              credit_balance INTEGER NOT NULL DEFAULT 0 CHECK (credit_balance >= 0),
              is_privileged  INTEGER NOT NULL DEFAULT 0,
              created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cases (
              id             TEXT PRIMARY KEY,
              title          TEXT NOT NULL,
              patient_name   TEXT NOT NULL,
              diagnosis      TEXT NOT NULL,
              patient_age    INTEGER,
              patient_gender TEXT
            );

            CREATE TABLE IF NOT EXISTS case_materials (
              id         INTEGER PRIMARY KEY AUTOINCREMENT,
              case_id    TEXT NOT NULL,
              category   TEXT NOT NULL CHECK (category IN ('doctors_note','patient_script','medical_notes')),
              position   INTEGER NOT NULL DEFAULT 0,
              content    TEXT NOT NULL,
              FOREIGN KEY(case_id) REFERENCES cases(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_case_materials_case ON case_materials(case_id, category, position);

            CREATE TABLE IF NOT EXISTS scenarios (
              id                 TEXT PRIMARY KEY,
              case_id            TEXT NOT NULL,
              credit_cost        INTEGER NOT NULL DEFAULT 1 CHECK (credit_cost >= 0),
              case_prompt        TEXT NOT NULL DEFAULT '',
              opening_line       TEXT,
              voice_model        TEXT,
              time_limit_minutes INTEGER,
              FOREIGN KEY(case_id) REFERENCES cases(id)
            );

            CREATE TABLE IF NOT EXISTS marking_domains (
              id    TEXT PRIMARY KEY,
              name  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS marking_criteria (
              id            TEXT PRIMARY KEY,
              case_id       TEXT NOT NULL,
              domain_id     TEXT NOT NULL,
              text          TEXT NOT NULL,
              points        INTEGER NOT NULL DEFAULT 1 CHECK (points >= 0),
              display_order INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(case_id) REFERENCES cases(id) ON DELETE CASCADE,
              FOREIGN KEY(domain_id) REFERENCES marking_domains(id)
            );

            CREATE INDEX IF NOT EXISTS idx_marking_criteria_case ON marking_criteria(case_id);

            CREATE TABLE IF NOT EXISTS attempts (
              id                TEXT PRIMARY KEY,
              learner_id        TEXT NOT NULL,
              scenario_id       TEXT NOT NULL,
              correlation_token TEXT NOT NULL UNIQUE,
              status            TEXT NOT NULL DEFAULT 'created'
                                CHECK (status IN ('created','in_progress','completed','cancelled')),
              started_at        TEXT NOT NULL,
              ended_at          TEXT,
              duration_seconds  INTEGER,
              is_completed      INTEGER NOT NULL DEFAULT 0,
              score             INTEGER CHECK (score IS NULL OR (score >= 0 AND score <= 100)),
              assessment        TEXT,
              raw_transcript    TEXT,
              transcript        TEXT,
              ai_prompt         TEXT,
              created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(learner_id) REFERENCES learners(id),
              FOREIGN KEY(scenario_id) REFERENCES scenarios(id)
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_learner ON attempts(learner_id, started_at DESC);
            CREATE INDEX IF NOT EXISTS idx_attempts_scenario ON attempts(scenario_id, started_at DESC);
            CREATE INDEX IF NOT EXISTS idx_attempts_token ON attempts(correlation_token);
            """
        )
        con.commit()


# -------------- learners --------------
def upsert_learner(
    learner_id: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    credit_balance: int = 0,
    is_privileged: bool = False,
) -> None:
    _exec(
        """
        INSERT INTO learners(id, name, email, credit_balance, is_privileged)
        VALUES (?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            email = excluded.email,
            credit_balance = excluded.credit_balance,
            is_privileged = excluded.is_privileged
        """,
        (learner_id, name, email, int(credit_balance), 1 if is_privileged else 0),
    )


def get_learner(learner_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT id, name, email, credit_balance, is_privileged, created_at FROM learners WHERE id = ?",
        (learner_id,),
    )
    if not rows:
        return None
    row = dict(rows[0])
    row["is_privileged"] = bool(row["is_privileged"])
    return row


def adjust_credits(learner_id: str, delta: int) -> Optional[int]:
    """Apply an administrative balance change, clamped at zero.

    Returns the new balance, or ``None`` when the learner does not exist.
    """
    with _pool.transaction() as con:
        cur = con.execute(
            "UPDATE learners SET credit_balance = MAX(0, credit_balance + ?) WHERE id = ?",
            (int(delta), learner_id),
        )
        if cur.rowcount == 0:
            return None
        row = con.execute("SELECT credit_balance FROM learners WHERE id = ?", (learner_id,)).fetchone()
    return int(row["credit_balance"])


# -------------- cases & scenarios --------------
def upsert_case(
    case_id: str,
    title: str,
    patient_name: str,
    diagnosis: str,
    patient_age: Optional[int] = None,
    patient_gender: Optional[str] = None,
) -> None:
    _exec(
        """
        INSERT INTO cases(id, title, patient_name, diagnosis, patient_age, patient_gender)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            title = excluded.title,
            patient_name = excluded.patient_name,
            diagnosis = excluded.diagnosis,
            patient_age = excluded.patient_age,
            patient_gender = excluded.patient_gender
        """,
        (case_id, title, patient_name, diagnosis, patient_age, patient_gender),
    )


def get_case(case_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT id, title, patient_name, diagnosis, patient_age, patient_gender FROM cases WHERE id = ?",
        (case_id,),
    )
    return dict(rows[0]) if rows else None


def set_case_materials(case_id: str, category: str, items: Sequence[str]) -> None:
    """Replace the ordered items stored for one material category of a case."""
    if category not in MATERIAL_CATEGORIES:
        raise ValueError(f"unknown material category: {category}")
    with _pool.transaction() as con:
        con.execute("DELETE FROM case_materials WHERE case_id = ? AND category = ?", (case_id, category))
        con.executemany(
            "INSERT INTO case_materials(case_id, category, position, content) VALUES (?,?,?,?)",
            [(case_id, category, idx, str(item)) for idx, item in enumerate(items)],
        )


def get_case_materials(case_id: str) -> Dict[str, list[str]]:
    rows = _query(
        "SELECT category, content FROM case_materials WHERE case_id = ? ORDER BY category, position, id",
        (case_id,),
    )
    materials: Dict[str, list[str]] = {category: [] for category in MATERIAL_CATEGORIES}
    for row in rows:
        materials[row["category"]].append(row["content"])
    return materials


def upsert_scenario(
    scenario_id: str,
    case_id: str,
    credit_cost: int = 1,
    case_prompt: str = "",
    opening_line: Optional[str] = None,
    voice_model: Optional[str] = None,
    time_limit_minutes: Optional[int] = None,
) -> None:
    _exec(
        """
        INSERT INTO scenarios(id, case_id, credit_cost, case_prompt, opening_line, voice_model, time_limit_minutes)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            case_id = excluded.case_id,
            credit_cost = excluded.credit_cost,
            case_prompt = excluded.case_prompt,
            opening_line = excluded.opening_line,
            voice_model = excluded.voice_model,
            time_limit_minutes = excluded.time_limit_minutes
        """,
        (scenario_id, case_id, int(credit_cost), case_prompt, opening_line, voice_model, time_limit_minutes),
    )


def get_scenario(scenario_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, case_id, credit_cost, case_prompt, opening_line, voice_model, time_limit_minutes
        FROM scenarios WHERE id = ?
        """,
        (scenario_id,),
    )
    return dict(rows[0]) if rows else None


# -------------- marking scheme --------------
def upsert_marking_domain(domain_id: str, name: str) -> None:
    _exec(
        "INSERT INTO marking_domains(id, name) VALUES (?,?) ON CONFLICT(id) DO UPDATE SET name = excluded.name",
        (domain_id, name),
    )


def upsert_marking_criterion(
    criterion_id: str,
    case_id: str,
    domain_id: str,
    text: str,
    points: int = 1,
    display_order: int = 0,
) -> None:
    _exec(
        """
        INSERT INTO marking_criteria(id, case_id, domain_id, text, points, display_order)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
            case_id = excluded.case_id,
            domain_id = excluded.domain_id,
            text = excluded.text,
            points = excluded.points,
            display_order = excluded.display_order
        """,
        (criterion_id, case_id, domain_id, text, int(points), int(display_order)),
    )


def list_marking_criteria(case_id: str) -> list[Dict[str, Any]]:
    """Criteria of a case with their domain, ordered by domain name then display order."""
    rows = _query(
        """
        SELECT c.id, c.text, c.points, c.display_order, d.id AS domain_id, d.name AS domain_name
        FROM marking_criteria c
        JOIN marking_domains d ON d.id = c.domain_id
        WHERE c.case_id = ?
        ORDER BY d.name ASC, c.display_order ASC, c.id ASC
        """,
        (case_id,),
    )
    return [dict(row) for row in rows]


# -------------- attempts --------------
_ATTEMPT_COLUMNS = """
    id, learner_id, scenario_id, correlation_token, status, started_at, ended_at,
    duration_seconds, is_completed, score, assessment, raw_transcript, transcript,
    ai_prompt, created_at
"""


def _attempt_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_completed"] = bool(data["is_completed"])
    for key in _ATTEMPT_JSON_FIELDS:
        data[key] = _decode_json_field(data.get(key))
    return data


def create_attempt(
    attempt_id: str,
    learner_id: str,
    scenario_id: str,
    correlation_token: str,
    started_at: datetime,
    *,
    debit: int = 0,
) -> bool:
    """Insert a new attempt, debiting ``debit`` credits in the same transaction.

    Returns ``False`` without writing anything when the balance cannot cover
    the debit.
    """
    with _pool.transaction() as con:
        if debit > 0:
            cur = con.execute(
                "UPDATE learners SET credit_balance = credit_balance - ? WHERE id = ? AND credit_balance >= ?",
                (int(debit), learner_id, int(debit)),
            )
            if cur.rowcount == 0:
                return False
        con.execute(
            """
            INSERT INTO attempts(id, learner_id, scenario_id, correlation_token, status, started_at)
            VALUES (?,?,?,?, 'created', ?)
            """,
            (attempt_id, learner_id, scenario_id, correlation_token, _ts(started_at)),
        )
    return True


def mark_attempt_in_progress(attempt_id: str) -> bool:
    cur = _exec(
        "UPDATE attempts SET status = 'in_progress' WHERE id = ? AND status = 'created' AND is_completed = 0",
        (attempt_id,),
    )
    return cur.rowcount > 0


def refund_and_delete_attempt(attempt_id: str, learner_id: str, amount: int) -> bool:
    """Delete a non-completed attempt and credit ``amount`` back in one transaction."""
    with _pool.transaction() as con:
        cur = con.execute("DELETE FROM attempts WHERE id = ? AND is_completed = 0", (attempt_id,))
        if cur.rowcount == 0:
            return False
        if amount > 0:
            con.execute(
                "UPDATE learners SET credit_balance = credit_balance + ? WHERE id = ?",
                (int(amount), learner_id),
            )
    return True


def delete_attempt(attempt_id: str) -> bool:
    cur = _exec("DELETE FROM attempts WHERE id = ?", (attempt_id,))
    return cur.rowcount > 0


def save_raw_transcript(correlation_token: str, payload: Any) -> Optional[str]:
    """Store the voice-side transcript for an open attempt; returns its attempt id."""
    with _pool.transaction() as con:
        row = con.execute(
            "SELECT id FROM attempts WHERE correlation_token = ? AND is_completed = 0",
            (correlation_token,),
        ).fetchone()
        if row is None:
            return None
        con.execute("UPDATE attempts SET raw_transcript = ? WHERE id = ?", (json_dumps(payload), row["id"]))
    return row["id"]


def get_raw_transcript(attempt_id: str) -> Any:
    rows = _query("SELECT raw_transcript FROM attempts WHERE id = ?", (attempt_id,))
    if not rows:
        return None
    return _decode_json_field(rows[0]["raw_transcript"])


def complete_attempt(
    attempt_id: str,
    *,
    ended_at: datetime,
    duration_seconds: int,
    transcript: Any,
    assessment: Dict[str, Any],
    ai_prompt: Optional[Dict[str, Any]],
    score: Optional[int],
) -> bool:
    cur = _exec(
        """
        UPDATE attempts SET
            status = 'completed',
            is_completed = 1,
            ended_at = ?,
            duration_seconds = ?,
            transcript = ?,
            assessment = ?,
            ai_prompt = ?,
            score = ?
        WHERE id = ? AND is_completed = 0 AND status IN ('created','in_progress')
        """,
        (
            _ts(ended_at),
            int(duration_seconds),
            json_dumps(transcript) if transcript is not None else None,
            json_dumps(assessment),
            json_dumps(ai_prompt) if ai_prompt is not None else None,
            score,
            attempt_id,
        ),
    )
    return cur.rowcount > 0


def cancel_attempt(
    attempt_id: str,
    *,
    ended_at: datetime,
    duration_seconds: int,
    transcript: Any,
    assessment: Dict[str, Any],
) -> bool:
    cur = _exec(
        """
        UPDATE attempts SET
            status = 'cancelled',
            ended_at = ?,
            duration_seconds = ?,
            transcript = ?,
            assessment = ?
        WHERE id = ? AND is_completed = 0 AND status IN ('created','in_progress')
        """,
        (
            _ts(ended_at),
            int(duration_seconds),
            json_dumps(transcript) if transcript is not None else None,
            json_dumps(assessment),
            attempt_id,
        ),
    )
    return cur.rowcount > 0


def get_attempt(attempt_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE id = ?", (attempt_id,))
    return _attempt_from_row(rows[0]) if rows else None


def get_attempt_by_token(correlation_token: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE correlation_token = ?", (correlation_token,))
    return _attempt_from_row(rows[0]) if rows else None


def list_attempts(
    *,
    learner_id: Optional[str] = None,
    scenario_id: Optional[str] = None,
    completed: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if learner_id is not None:
        clauses.append("learner_id = ?")
        params.append(learner_id)
    if scenario_id is not None:
        clauses.append("scenario_id = ?")
        params.append(scenario_id)
    if completed is not None:
        clauses.append("is_completed = ?")
        params.append(1 if completed else 0)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(
        f"SELECT {_ATTEMPT_COLUMNS} FROM attempts {where} ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?",
        (*params, int(limit), int(offset)),
    )
    return [_attempt_from_row(row) for row in rows]


def list_completed_assessments(learner_id: str) -> list[Dict[str, Any]]:
    """Completed attempts of a learner with their stored assessment and case title, newest first."""
    rows = _query(
        """
        SELECT a.id, a.scenario_id, a.started_at, a.assessment, c.title AS case_title
        FROM attempts a
        JOIN scenarios s ON s.id = a.scenario_id
        LEFT JOIN cases c ON c.id = s.case_id
        WHERE a.learner_id = ? AND a.status = 'completed' AND a.assessment IS NOT NULL
        ORDER BY a.started_at DESC, a.id DESC
        """,
        (learner_id,),
    )
    out = []
    for row in rows:
        data = dict(row)
        data["assessment"] = _decode_json_field(data.get("assessment"))
        out.append(data)
    return out


# -------------- statistics --------------
def _completion_rate(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 2)


def _avg(value: Optional[float]) -> Optional[float]:
    return round(float(value), 2) if value is not None else None


def learner_attempt_stats(learner_id: str) -> Dict[str, Any]:
    rows = _query(
        """
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(is_completed), 0) AS completed,
            AVG(CASE WHEN is_completed = 1 THEN score END) AS avg_score,
            MIN(CASE WHEN is_completed = 1 THEN score END) AS min_score,
            MAX(CASE WHEN is_completed = 1 THEN score END) AS max_score,
            AVG(CASE WHEN is_completed = 1 THEN duration_seconds END) AS avg_duration,
            MIN(CASE WHEN is_completed = 1 THEN duration_seconds END) AS min_duration,
            MAX(CASE WHEN is_completed = 1 THEN duration_seconds END) AS max_duration
        FROM attempts WHERE learner_id = ?
        """,
        (learner_id,),
    )
    row = rows[0]
    total = int(row["total"])
    completed = int(row["completed"])
    return {
        "learner_id": learner_id,
        "total_attempts": total,
        "completed_attempts": completed,
        "incomplete_attempts": total - completed,
        "completion_rate": _completion_rate(completed, total),
        "score": {
            "average": _avg(row["avg_score"]),
            "min": row["min_score"],
            "max": row["max_score"],
        },
        "duration_seconds": {
            "average": _avg(row["avg_duration"]),
            "min": row["min_duration"],
            "max": row["max_duration"],
        },
    }


def scenario_attempt_stats(scenario_id: str) -> Dict[str, Any]:
    rows = _query(
        """
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(is_completed), 0) AS completed,
            COUNT(DISTINCT learner_id) AS unique_learners,
            AVG(CASE WHEN is_completed = 1 THEN score END) AS avg_score,
            MIN(CASE WHEN is_completed = 1 THEN score END) AS min_score,
            MAX(CASE WHEN is_completed = 1 THEN score END) AS max_score
        FROM attempts WHERE scenario_id = ?
        """,
        (scenario_id,),
    )
    row = rows[0]
    total = int(row["total"])
    completed = int(row["completed"])
    return {
        "scenario_id": scenario_id,
        "total_attempts": total,
        "completed_attempts": completed,
        "incomplete_attempts": total - completed,
        "unique_learners": int(row["unique_learners"]),
        "completion_rate": _completion_rate(completed, total),
        "score": {
            "average": _avg(row["avg_score"]),
            "min": row["min_score"],
            "max": row["max_score"],
        },
    }
