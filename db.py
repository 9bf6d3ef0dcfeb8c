"""SQLite persistence for behavior events, synced skill profiles and session reports."""

import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "engine.db")


def _connect() -> sqlite3.Connection:
    con = sqlite3.connect(DB_PATH)
    con.row_factory = sqlite3.Row
    return con


def _exec(sql: str, params: Iterable = ()) -> None:
    with _connect() as con:
        con.execute(sql, tuple(params))
        con.commit()


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _connect() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return None


def init() -> None:
    parent = Path(DB_PATH).parent
    parent.mkdir(parents=True, exist_ok=True)
    with _connect() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS behavior_events (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id      TEXT NOT NULL,
              session_id   TEXT,
              component    TEXT NOT NULL,
              action_type  TEXT NOT NULL,
              payload      TEXT,
              occurred_at  REAL NOT NULL,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_behavior_user ON behavior_events(user_id, occurred_at);

            CREATE TABLE IF NOT EXISTS skill_profiles (
              user_id              TEXT PRIMARY KEY,
              customer_analysis    REAL NOT NULL,
              value_communication  REAL NOT NULL,
              executive_readiness  REAL NOT NULL,
              overall              REAL NOT NULL,
              last_assessment      REAL NOT NULL,
              updated_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS session_reports (
              session_id   TEXT PRIMARY KEY,
              user_id      TEXT,
              report       TEXT NOT NULL,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS optimization_log (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id    TEXT NOT NULL,
              dispatch_id   TEXT NOT NULL,
              task_type     TEXT NOT NULL,
              priority      TEXT NOT NULL,
              status        TEXT NOT NULL,
              detail        TEXT,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_optimization_session ON optimization_log(session_id);
            """
        )


# -------------- behavior events --------------
def record_behavior_event(
    user_id: str,
    component: str,
    action_type: str,
    payload: Optional[Mapping[str, Any]],
    occurred_at: float,
    session_id: Optional[str] = None,
) -> None:
    _exec(
        """
        INSERT INTO behavior_events(user_id, session_id, component, action_type, payload, occurred_at)
        VALUES (?,?,?,?,?,?)
        """,
        (
            user_id,
            session_id,
            component,
            action_type,
            json.dumps(dict(payload or {}), ensure_ascii=False, default=str),
            float(occurred_at),
        ),
    )


def list_behavior_events(user_id: str, limit: int = 5000) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT user_id, session_id, component, action_type, payload, occurred_at
        FROM behavior_events
        WHERE user_id = ?
        ORDER BY occurred_at ASC, id ASC
        LIMIT ?
        """,
        (user_id, int(limit)),
    )
    events = []
    for row in rows:
        payload = _decode_json_field(row["payload"])
        events.append(
            {
                "user_id": row["user_id"],
                "session_id": row["session_id"],
                "component": row["component"],
                "action_type": row["action_type"],
                "payload": payload if isinstance(payload, dict) else {},
                "occurred_at": float(row["occurred_at"]),
            }
        )
    return events


# -------------- skill profiles --------------
def upsert_skill_profile(user_id: str, scores: Mapping[str, Any]) -> None:
    """Upsert the latest synced skill scores for ``user_id``."""
    _exec(
        """
        INSERT INTO skill_profiles
        (user_id, customer_analysis, value_communication, executive_readiness, overall, last_assessment, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            customer_analysis = excluded.customer_analysis,
            value_communication = excluded.value_communication,
            executive_readiness = excluded.executive_readiness,
            overall = excluded.overall,
            last_assessment = excluded.last_assessment,
            updated_at = CURRENT_TIMESTAMP
        """,
        (
            user_id,
            float(scores["customer_analysis"]),
            float(scores["value_communication"]),
            float(scores["executive_readiness"]),
            float(scores["overall"]),
            float(scores["last_assessment"]),
        ),
    )


def get_skill_profile(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM skill_profiles WHERE user_id = ?", (user_id,))
    if not rows:
        return None
    row = rows[0]
    return {
        "customer_analysis": row["customer_analysis"],
        "value_communication": row["value_communication"],
        "executive_readiness": row["executive_readiness"],
        "overall": row["overall"],
        "last_assessment": row["last_assessment"],
        "updated_at": row["updated_at"],
    }


# -------------- session reports --------------
def save_session_report(session_id: str, user_id: Optional[str], report: Mapping[str, Any]) -> None:
    _exec(
        """
        INSERT INTO session_reports(session_id, user_id, report, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(session_id) DO UPDATE SET
            report = excluded.report,
            created_at = excluded.created_at
        """,
        (
            session_id,
            user_id,
            json.dumps(dict(report), ensure_ascii=False, default=str),
            datetime.now(timezone.utc).isoformat(),
        ),
    )


def get_session_report(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT report FROM session_reports WHERE session_id = ?", (session_id,))
    if not rows:
        return None
    decoded = _decode_json_field(rows[0]["report"])
    return decoded if isinstance(decoded, dict) else None


def log_optimization(
    session_id: str,
    dispatch_id: str,
    task_type: str,
    priority: str,
    status: str,
    detail: Optional[Mapping[str, Any]] = None,
) -> None:
    """Log a dispatch outcome for analytics."""
    _exec(
        """
        INSERT INTO optimization_log(session_id, dispatch_id, task_type, priority, status, detail)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            dispatch_id,
            task_type,
            priority,
            status,
            json.dumps(dict(detail or {}), ensure_ascii=False, default=str),
        ),
    )


def list_optimizations(session_id: str, limit: int = 200) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT dispatch_id, task_type, priority, status, detail, created_at
        FROM optimization_log
        WHERE session_id = ?
        ORDER BY id ASC
        LIMIT ?
        """,
        (session_id, int(limit)),
    )
    return [
        {
            "dispatch_id": row["dispatch_id"],
            "task_type": row["task_type"],
            "priority": row["priority"],
            "status": row["status"],
            "detail": _decode_json_field(row["detail"]) or {},
            "created_at": row["created_at"],
        }
        for row in rows
    ]
