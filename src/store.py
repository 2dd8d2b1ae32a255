"""
CRMStore - SQLite datastore for the orchestration engine.

Holds the CRM entities the engine reads and mutates (accounts, agents and
their script stages, contacts, conversations and transcripts, pipelines and
deals, tags, custom fields, bookings, follow-ups) plus the bookkeeping of the
debounce trigger (processed-message ledger, pending responses) and token usage.

Times are epoch seconds (REAL) unless a column name says otherwise.
Weekdays follow datetime.weekday(): 0 = Monday.
"""

from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from src.logger import logger


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id                   TEXT PRIMARY KEY,
        name                 TEXT NOT NULL DEFAULT '',
        allow_multiple_deals INTEGER NOT NULL DEFAULT 1,
        model_api_key        TEXT,
        calendar_token       TEXT,
        calendar_id          TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agents (
        id                   TEXT PRIMARY KEY,
        account_id           TEXT NOT NULL,
        name                 TEXT NOT NULL,
        prompt               TEXT NOT NULL DEFAULT '',
        model                TEXT,
        max_tokens           INTEGER,
        temperature          REAL,
        history_limit        INTEGER,
        is_primary           INTEGER NOT NULL DEFAULT 0,
        active               INTEGER NOT NULL DEFAULT 1,
        hours_mode           TEXT NOT NULL DEFAULT '24h',
        out_of_hours_message TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_hours (
        agent_id   TEXT NOT NULL,
        weekday    INTEGER NOT NULL,
        start_time TEXT NOT NULL,
        end_time   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_stages (
        id          TEXT PRIMARY KEY,
        agent_id    TEXT NOT NULL,
        number      INTEGER NOT NULL,
        name        TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS faqs (
        id       TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        question TEXT NOT NULL,
        answer   TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id         TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        name       TEXT,
        phone      TEXT,
        email      TEXT,
        tags       TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id                TEXT PRIMARY KEY,
        account_id        TEXT NOT NULL,
        contact_id        TEXT NOT NULL,
        agent_id          TEXT,
        agent_active      INTEGER NOT NULL DEFAULT 1,
        status            TEXT NOT NULL DEFAULT 'open',
        active_stage_id   TEXT,
        memory_cleared_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT NOT NULL,
        direction       TEXT NOT NULL,
        content         TEXT NOT NULL DEFAULT '',
        kind            TEXT NOT NULL DEFAULT 'text',
        metadata        TEXT NOT NULL DEFAULT '{}',
        created_at      REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id)",
    """
    CREATE TABLE IF NOT EXISTS pipelines (
        id         TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        name       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_stages (
        id          TEXT PRIMARY KEY,
        pipeline_id TEXT NOT NULL,
        name        TEXT NOT NULL,
        position    INTEGER NOT NULL DEFAULT 0,
        stage_type  TEXT NOT NULL DEFAULT 'lead'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deals (
        id          TEXT PRIMARY KEY,
        account_id  TEXT NOT NULL,
        contact_id  TEXT NOT NULL,
        stage_id    TEXT NOT NULL,
        title       TEXT NOT NULL,
        amount      REAL,
        probability INTEGER,
        status      TEXT NOT NULL DEFAULT 'open',
        created_at  REAL NOT NULL,
        updated_at  REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id         TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        name       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS custom_fields (
        id         TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        name       TEXT NOT NULL,
        field_type TEXT NOT NULL DEFAULT 'text'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS field_values (
        contact_id TEXT NOT NULL,
        field_id   TEXT NOT NULL,
        value      TEXT,
        updated_at REAL NOT NULL,
        PRIMARY KEY (contact_id, field_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability_windows (
        agent_id   TEXT NOT NULL,
        weekday    INTEGER NOT NULL,
        start_hour INTEGER NOT NULL,
        end_hour   INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduling_config (
        agent_id       TEXT PRIMARY KEY,
        max_days_ahead INTEGER,
        min_lead_hours INTEGER,
        slot_minutes   INTEGER,
        per_slot_limit INTEGER,
        use_external   INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id                TEXT PRIMARY KEY,
        account_id        TEXT NOT NULL,
        agent_id          TEXT,
        contact_id        TEXT,
        conversation_id   TEXT,
        title             TEXT NOT NULL,
        start_ts          REAL NOT NULL,
        end_ts            REAL NOT NULL,
        meeting_link      TEXT,
        external_event_id TEXT,
        status            TEXT NOT NULL DEFAULT 'confirmed',
        created_at        REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS followups (
        id              TEXT PRIMARY KEY,
        account_id      TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        contact_id      TEXT,
        scheduled_for   TEXT NOT NULL,
        reason          TEXT NOT NULL,
        context         TEXT NOT NULL DEFAULT '',
        status          TEXT NOT NULL DEFAULT 'pending',
        created_by      TEXT NOT NULL DEFAULT 'agent',
        created_at      REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfers (
        id              TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        mode            TEXT NOT NULL,
        from_agent_id   TEXT,
        to_agent_id     TEXT,
        created_at      REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id      TEXT,
        conversation_id TEXT,
        kind            TEXT NOT NULL,
        details         TEXT NOT NULL DEFAULT '{}',
        created_at      REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_messages (
        message_id   TEXT NOT NULL,
        account_id   TEXT NOT NULL,
        processed_at REAL NOT NULL,
        PRIMARY KEY (message_id, account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_responses (
        conversation_id TEXT PRIMARY KEY,
        account_id      TEXT NOT NULL,
        respond_at      REAL NOT NULL,
        processing      INTEGER NOT NULL DEFAULT 0,
        updated_at      REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_usage (
        id                INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id        TEXT,
        conversation_id   TEXT,
        model             TEXT,
        prompt_tokens     INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens      INTEGER NOT NULL,
        estimated_cost    REAL NOT NULL,
        created_at        REAL NOT NULL
    )
    """,
]

_JSON_COLUMNS = {"tags", "metadata", "details"}


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for column in _JSON_COLUMNS & data.keys():
        if isinstance(data[column], str):
            data[column] = json.loads(data[column] or "null")
    return data


class CRMStore:
    """SQLite-backed CRM datastore shared by the engine, dispatcher and trigger."""

    DEFAULT_DB_NAME = "crm.db"
    SQLITE_TIMEOUT_SECONDS = 30
    SQLITE_BUSY_TIMEOUT_MS = 5000

    def __init__(self, db_path: Optional[str] = None):
        self._db_path = Path(
            db_path or os.getenv("DB_PATH", self.DEFAULT_DB_NAME)
        ).resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> str:
        return str(self._db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=self.SQLITE_TIMEOUT_SECONDS, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self.SQLITE_BUSY_TIMEOUT_MS}")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)

    # =========================================================================
    # Generic helpers
    # =========================================================================

    def _insert(self, table: str, values: Dict[str, Any]) -> str:
        values = dict(values)
        for column in _JSON_COLUMNS & values.keys():
            if not isinstance(values[column], str):
                values[column] = json.dumps(values[column], ensure_ascii=False)
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({marks})", tuple(values.values())
            )
        return str(values.get("id", cursor.lastrowid))

    def _update(self, table: str, row_id: Any, values: Dict[str, Any], key: str = "id") -> None:
        if not values:
            return
        values = dict(values)
        for column in _JSON_COLUMNS & values.keys():
            if not isinstance(values[column], str):
                values[column] = json.dumps(values[column], ensure_ascii=False)
        assignments = ", ".join(f"{column}=?" for column in values)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {key}=?",
                tuple(values.values()) + (row_id,),
            )

    def _one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return _row_to_dict(conn.execute(sql, params).fetchone())

    def _all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            return [_row_to_dict(r) for r in conn.execute(sql, params).fetchall()]

    # =========================================================================
    # Accounts, agents, script
    # =========================================================================

    def create_account(self, name: str = "", allow_multiple_deals: bool = True,
                       model_api_key: Optional[str] = None, account_id: Optional[str] = None,
                       calendar_token: Optional[str] = None, calendar_id: Optional[str] = None) -> str:
        return self._insert("accounts", {
            "id": account_id or _new_id(),
            "name": name,
            "allow_multiple_deals": int(allow_multiple_deals),
            "model_api_key": model_api_key,
            "calendar_token": calendar_token,
            "calendar_id": calendar_id,
        })

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM accounts WHERE id=?", (account_id,))

    def create_agent(self, account_id: str, name: str, prompt: str = "", is_primary: bool = False,
                     active: bool = True, model: Optional[str] = None, max_tokens: Optional[int] = None,
                     temperature: Optional[float] = None, history_limit: Optional[int] = None,
                     hours_mode: str = "24h", out_of_hours_message: Optional[str] = None,
                     agent_id: Optional[str] = None) -> str:
        return self._insert("agents", {
            "id": agent_id or _new_id(),
            "account_id": account_id,
            "name": name,
            "prompt": prompt,
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "history_limit": history_limit,
            "is_primary": int(is_primary),
            "active": int(active),
            "hours_mode": hours_mode,
            "out_of_hours_message": out_of_hours_message,
        })

    def get_agent(self, agent_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not agent_id:
            return None
        return self._one("SELECT * FROM agents WHERE id=?", (agent_id,))

    def list_agents(self, account_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM agents WHERE account_id=?"
        if active_only:
            sql += " AND active=1"
        return self._all(sql + " ORDER BY is_primary DESC, name", (account_id,))

    def find_primary_agent(self, account_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM agents WHERE account_id=? AND is_primary=1 AND active=1 LIMIT 1",
            (account_id,),
        )

    def add_agent_hours(self, agent_id: str, weekday: int, start_time: str, end_time: str) -> None:
        self._insert("agent_hours", {
            "agent_id": agent_id, "weekday": weekday,
            "start_time": start_time, "end_time": end_time,
        })

    def list_agent_hours(self, agent_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM agent_hours WHERE agent_id=?", (agent_id,))

    def add_agent_stage(self, agent_id: str, number: int, name: str, description: str = "") -> str:
        return self._insert("agent_stages", {
            "id": _new_id(), "agent_id": agent_id, "number": number,
            "name": name, "description": description,
        })

    def list_agent_stages(self, agent_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM agent_stages WHERE agent_id=? ORDER BY number", (agent_id,))

    def add_faq(self, agent_id: str, question: str, answer: str) -> str:
        return self._insert("faqs", {
            "id": _new_id(), "agent_id": agent_id, "question": question, "answer": answer,
        })

    def list_faqs(self, agent_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM faqs WHERE agent_id=?", (agent_id,))

    # =========================================================================
    # Contacts, conversations, transcript
    # =========================================================================

    def create_contact(self, account_id: str, name: Optional[str] = None, phone: Optional[str] = None,
                       email: Optional[str] = None, tags: Optional[List[str]] = None,
                       contact_id: Optional[str] = None) -> str:
        return self._insert("contacts", {
            "id": contact_id or _new_id(), "account_id": account_id, "name": name,
            "phone": phone, "email": email, "tags": tags or [],
        })

    def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM contacts WHERE id=?", (contact_id,))

    def update_contact(self, contact_id: str, **fields: Any) -> None:
        self._update("contacts", contact_id, fields)

    def create_conversation(self, account_id: str, contact_id: str, agent_id: Optional[str] = None,
                            agent_active: bool = True, conversation_id: Optional[str] = None) -> str:
        return self._insert("conversations", {
            "id": conversation_id or _new_id(), "account_id": account_id,
            "contact_id": contact_id, "agent_id": agent_id,
            "agent_active": int(agent_active),
        })

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM conversations WHERE id=?", (conversation_id,))

    def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        self._update("conversations", conversation_id, fields)

    def add_message(self, conversation_id: str, direction: str, content: str,
                    kind: str = "text", metadata: Optional[Dict[str, Any]] = None,
                    created_at: Optional[float] = None) -> str:
        """Append to the transcript. direction: 'in' | 'out' | 'system'."""
        return self._insert("messages", {
            "conversation_id": conversation_id,
            "direction": direction,
            "content": content,
            "kind": kind,
            "metadata": metadata or {},
            "created_at": created_at if created_at is not None else time.time(),
        })

    def recent_messages(self, conversation_id: str, limit: int,
                        after: Optional[float] = None, include_system: bool = False) -> List[Dict[str, Any]]:
        """Last `limit` messages, oldest first."""
        sql = "SELECT * FROM messages WHERE conversation_id=?"
        params: List[Any] = [conversation_id]
        if after is not None:
            sql += " AND created_at > ?"
            params.append(after)
        if not include_system:
            sql += " AND direction != 'system'"
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self._all(sql, tuple(params))
        rows.reverse()
        return rows

    def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM messages WHERE conversation_id=? ORDER BY id", (conversation_id,))

    def last_inbound_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM messages WHERE conversation_id=? AND direction='in' ORDER BY id DESC LIMIT 1",
            (conversation_id,),
        )

    # =========================================================================
    # Pipelines and deals
    # =========================================================================

    def create_pipeline(self, account_id: str, name: str) -> str:
        return self._insert("pipelines", {"id": _new_id(), "account_id": account_id, "name": name})

    def add_pipeline_stage(self, pipeline_id: str, name: str, position: int = 0,
                           stage_type: str = "lead") -> str:
        return self._insert("pipeline_stages", {
            "id": _new_id(), "pipeline_id": pipeline_id, "name": name,
            "position": position, "stage_type": stage_type,
        })

    def list_pipelines(self, account_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM pipelines WHERE account_id=? ORDER BY name", (account_id,))

    def list_pipeline_stages(self, account_id: str, pipeline_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stages with their pipeline name, in pipeline order."""
        sql = (
            "SELECT s.*, p.name AS pipeline_name FROM pipeline_stages s "
            "JOIN pipelines p ON p.id = s.pipeline_id WHERE p.account_id=?"
        )
        params: List[Any] = [account_id]
        if pipeline_id:
            sql += " AND p.id=?"
            params.append(pipeline_id)
        return self._all(sql + " ORDER BY p.name, s.position", tuple(params))

    def get_pipeline_stage(self, stage_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT s.*, p.name AS pipeline_name FROM pipeline_stages s "
            "JOIN pipelines p ON p.id = s.pipeline_id WHERE s.id=?",
            (stage_id,),
        )

    def list_open_deals(self, contact_id: str) -> List[Dict[str, Any]]:
        return self._all(
            "SELECT d.*, s.name AS stage_name, s.stage_type, p.name AS pipeline_name "
            "FROM deals d JOIN pipeline_stages s ON s.id = d.stage_id "
            "JOIN pipelines p ON p.id = s.pipeline_id "
            "WHERE d.contact_id=? AND d.status='open' ORDER BY d.updated_at DESC",
            (contact_id,),
        )

    def create_deal(self, account_id: str, contact_id: str, stage_id: str, title: str,
                    amount: Optional[float] = None, probability: Optional[int] = None) -> str:
        now = time.time()
        return self._insert("deals", {
            "id": _new_id(), "account_id": account_id, "contact_id": contact_id,
            "stage_id": stage_id, "title": title, "amount": amount,
            "probability": probability, "created_at": now, "updated_at": now,
        })

    def update_deal(self, deal_id: str, **fields: Any) -> None:
        fields["updated_at"] = time.time()
        self._update("deals", deal_id, fields)

    # =========================================================================
    # Tags and custom fields
    # =========================================================================

    def create_tag(self, account_id: str, name: str) -> str:
        return self._insert("tags", {"id": _new_id(), "account_id": account_id, "name": name})

    def list_tags(self, account_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM tags WHERE account_id=?", (account_id,))

    def create_custom_field(self, account_id: str, name: str, field_type: str = "text") -> str:
        return self._insert("custom_fields", {
            "id": _new_id(), "account_id": account_id, "name": name, "field_type": field_type,
        })

    def list_custom_fields(self, account_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM custom_fields WHERE account_id=? ORDER BY name", (account_id,))

    def upsert_field_value(self, contact_id: str, field_id: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO field_values (contact_id, field_id, value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(contact_id, field_id)
                   DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at""",
                (contact_id, field_id, value, time.time()),
            )

    def get_field_value(self, contact_id: str, field_id: str) -> Optional[str]:
        row = self._one(
            "SELECT value FROM field_values WHERE contact_id=? AND field_id=?",
            (contact_id, field_id),
        )
        return row["value"] if row else None

    def field_values(self, contact_id: str) -> Dict[str, str]:
        rows = self._all("SELECT field_id, value FROM field_values WHERE contact_id=?", (contact_id,))
        return {row["field_id"]: row["value"] for row in rows}

    # =========================================================================
    # Scheduling
    # =========================================================================

    def add_availability_window(self, agent_id: str, weekday: int, start_hour: int, end_hour: int) -> None:
        self._insert("availability_windows", {
            "agent_id": agent_id, "weekday": weekday,
            "start_hour": start_hour, "end_hour": end_hour,
        })

    def list_availability_windows(self, agent_id: str) -> List[Dict[str, Any]]:
        return self._all(
            "SELECT * FROM availability_windows WHERE agent_id=? ORDER BY weekday, start_hour",
            (agent_id,),
        )

    def set_scheduling_config(self, agent_id: str, **fields: Any) -> None:
        values = {"agent_id": agent_id, **fields}
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        updates = ", ".join(f"{c}=excluded.{c}" for c in fields) or "agent_id=excluded.agent_id"
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO scheduling_config ({columns}) VALUES ({marks}) "
                f"ON CONFLICT(agent_id) DO UPDATE SET {updates}",
                tuple(values.values()),
            )

    def get_scheduling_config(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM scheduling_config WHERE agent_id=?", (agent_id,))

    def bookings_between(self, account_id: str, start_ts: float, end_ts: float,
                         agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Confirmed bookings overlapping [start_ts, end_ts)."""
        sql = (
            "SELECT * FROM bookings WHERE account_id=? AND status='confirmed' "
            "AND start_ts < ? AND end_ts > ?"
        )
        params: List[Any] = [account_id, end_ts, start_ts]
        if agent_id:
            sql += " AND agent_id=?"
            params.append(agent_id)
        return self._all(sql + " ORDER BY start_ts", tuple(params))

    def add_booking(self, account_id: str, title: str, start_ts: float, end_ts: float,
                    agent_id: Optional[str] = None, contact_id: Optional[str] = None,
                    conversation_id: Optional[str] = None, meeting_link: Optional[str] = None,
                    external_event_id: Optional[str] = None) -> str:
        return self._insert("bookings", {
            "id": _new_id(), "account_id": account_id, "agent_id": agent_id,
            "contact_id": contact_id, "conversation_id": conversation_id, "title": title,
            "start_ts": start_ts, "end_ts": end_ts, "meeting_link": meeting_link,
            "external_event_id": external_event_id, "created_at": time.time(),
        })

    def add_followup(self, account_id: str, conversation_id: str, contact_id: Optional[str],
                     scheduled_for: str, reason: str, context: str = "") -> str:
        return self._insert("followups", {
            "id": _new_id(), "account_id": account_id, "conversation_id": conversation_id,
            "contact_id": contact_id, "scheduled_for": scheduled_for, "reason": reason,
            "context": context, "status": "pending", "created_by": "agent",
            "created_at": time.time(),
        })

    def list_followups(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM followups WHERE conversation_id=? ORDER BY created_at", (conversation_id,))

    # =========================================================================
    # Audit
    # =========================================================================

    def add_transfer(self, conversation_id: str, mode: str, from_agent_id: Optional[str],
                     to_agent_id: Optional[str]) -> str:
        return self._insert("transfers", {
            "id": _new_id(), "conversation_id": conversation_id, "mode": mode,
            "from_agent_id": from_agent_id, "to_agent_id": to_agent_id,
            "created_at": time.time(),
        })

    def log_activity(self, account_id: Optional[str], conversation_id: Optional[str],
                     kind: str, details: Optional[Dict[str, Any]] = None) -> None:
        self._insert("activity_log", {
            "account_id": account_id, "conversation_id": conversation_id,
            "kind": kind, "details": details or {}, "created_at": time.time(),
        })

    def list_activity(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self._all("SELECT * FROM activity_log WHERE conversation_id=? ORDER BY id", (conversation_id,))

    def add_token_usage(self, account_id: Optional[str], conversation_id: Optional[str], model: str,
                        prompt_tokens: int, completion_tokens: int, total_tokens: int,
                        estimated_cost: float) -> None:
        self._insert("token_usage", {
            "account_id": account_id, "conversation_id": conversation_id, "model": model,
            "prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens,
            "total_tokens": total_tokens, "estimated_cost": estimated_cost,
            "created_at": time.time(),
        })

    # =========================================================================
    # Debounce bookkeeping
    # =========================================================================

    def is_processed(self, message_id: str, account_id: str) -> bool:
        row = self._one(
            "SELECT 1 AS hit FROM processed_messages WHERE message_id=? AND account_id=?",
            (message_id, account_id),
        )
        return row is not None

    def mark_processed(self, message_id: str, account_id: str) -> bool:
        """Record a message id. Returns False when it was already recorded."""
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO processed_messages (message_id, account_id, processed_at)
                   VALUES (?, ?, ?) ON CONFLICT(message_id, account_id) DO NOTHING""",
                (message_id, account_id, time.time()),
            )
            return cursor.rowcount == 1

    def upsert_pending(self, conversation_id: str, account_id: str, respond_at: float) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO pending_responses (conversation_id, account_id, respond_at, processing, updated_at)
                   VALUES (?, ?, ?, 0, ?)
                   ON CONFLICT(conversation_id)
                   DO UPDATE SET respond_at=excluded.respond_at, updated_at=excluded.updated_at""",
                (conversation_id, account_id, respond_at, time.time()),
            )

    def get_pending(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM pending_responses WHERE conversation_id=?", (conversation_id,))

    def due_pending(self, now: float) -> List[Dict[str, Any]]:
        return self._all(
            "SELECT * FROM pending_responses WHERE respond_at <= ? AND processing=0 ORDER BY respond_at",
            (now,),
        )

    def claim_pending(self, conversation_id: str) -> bool:
        """Atomically flip processing 0 -> 1. True when this caller won."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE pending_responses SET processing=1, updated_at=? "
                "WHERE conversation_id=? AND processing=0",
                (time.time(), conversation_id),
            )
            return cursor.rowcount == 1

    def release_pending(self, conversation_id: str) -> None:
        self._update("pending_responses", conversation_id,
                     {"processing": 0, "updated_at": time.time()}, key="conversation_id")

    def finish_pending(self, conversation_id: str, claimed_at: Optional[float]) -> bool:
        """
        Close the pending row a finished turn answered.

        The row is removed only while its target is still `claimed_at`; a
        target moved by a message that arrived mid-turn survives and is
        released for the next tick. True when a row remains.
        """
        with self._connect() as conn:
            if claimed_at is not None:
                conn.execute(
                    "DELETE FROM pending_responses WHERE conversation_id=? AND respond_at<=?",
                    (conversation_id, claimed_at),
                )
            cursor = conn.execute(
                "UPDATE pending_responses SET processing=0, updated_at=? WHERE conversation_id=?",
                (time.time(), conversation_id),
            )
            remaining = cursor.rowcount == 1
        if remaining:
            logger.debug("Pending response moved during turn, released", conversation=conversation_id)
        return remaining
