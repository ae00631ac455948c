"""Database operations for the Dorfkoenig scout service.

This module provides SQLite-based storage for scouts, their executions,
extracted information units, and village newsletter drafts.

Database Schema:
    scouts table:
        - id (TEXT, PK): UUID
        - user_id (TEXT): Owner
        - name, url, criteria (TEXT): What to watch and what to look for
        - location (TEXT): JSON {city, state, country, latitude, longitude}
        - frequency (TEXT): daily | weekly | biweekly | monthly
        - consecutive_failures (INTEGER), last_run_at (REAL, Unix epoch)

    scout_executions table:
        - One row per run; status running -> completed | failed
        - summary_embedding (BLOB): float32 vector of the summary

    information_units table:
        - Atomic statements with their float32 embedding (BLOB)
        - source_type: scout | manual_text

    bajour_drafts table:
        - Newsletter drafts with WhatsApp verification state
        - verification_responses (TEXT): JSON list of responses

Features:
    - WAL mode for concurrent read/write access
    - Foreign keys: deleting a scout cascades to executions and units
    - Ownership: user-facing reads and writes filter by user_id
    - Vector search and duplicate checks in numpy over stored BLOBs
    - Context manager support for auto-cleanup
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import numpy as np

from embeddings import cosine_similarity
from models.draft import BajourDraft, VerificationResponse, VerificationStatus
from models.scout import (
    ChangeStatus,
    ExecutionStatus,
    Frequency,
    Location,
    Scout,
    ScoutExecution,
)
from models.unit import InformationUnit, SourceType, UnitType

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _to_ts(dt: datetime | None) -> float | None:
    """Convert datetime to Unix epoch seconds for storage."""
    return dt.timestamp() if dt is not None else None


def _from_ts(value: float | None) -> datetime | None:
    """Convert stored Unix epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def _embedding_to_blob(embedding) -> bytes:
    """Convert an embedding vector to SQLite BLOB."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _blob_to_embedding(blob: bytes) -> np.ndarray:
    """Convert SQLite BLOB to numpy embedding."""
    return np.frombuffer(blob, dtype=np.float32)


def _json_or_none(value: Any) -> str | None:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Database:
    """SQLite database for scouts, executions, units and drafts.

    Example:
        >>> with Database("dorfkoenig.db") as db:
        ...     scout = db.create_scout("user-1", "Gemeinderat", "https://example.ch")
        ...     execution = db.create_execution(scout.id, scout.user_id)
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS scouts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        url TEXT NOT NULL,
        criteria TEXT NOT NULL DEFAULT '',   -- Empty = monitor all changes
        location TEXT,                       -- JSON object or NULL
        topic TEXT,
        notification_email TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        frequency TEXT NOT NULL DEFAULT 'daily',
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        last_run_at REAL,                    -- Unix epoch
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_scouts_user ON scouts(user_id);

    CREATE TABLE IF NOT EXISTS scout_executions (
        id TEXT PRIMARY KEY,
        scout_id TEXT NOT NULL REFERENCES scouts(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'running',
        started_at REAL NOT NULL,
        completed_at REAL,
        change_status TEXT,
        criteria_matched INTEGER,            -- NULL until analysis
        summary_text TEXT,
        summary_embedding BLOB,
        is_duplicate INTEGER NOT NULL DEFAULT 0,
        duplicate_similarity REAL,
        notification_sent INTEGER NOT NULL DEFAULT 0,
        notification_error TEXT,
        units_extracted INTEGER NOT NULL DEFAULT 0,
        scrape_duration_ms INTEGER,
        error_message TEXT
    );

    -- Running-execution check and recent history per scout
    CREATE INDEX IF NOT EXISTS idx_exec_scout_status ON scout_executions(scout_id, status, started_at);

    CREATE TABLE IF NOT EXISTS information_units (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        scout_id TEXT REFERENCES scouts(id) ON DELETE CASCADE,
        execution_id TEXT REFERENCES scout_executions(id) ON DELETE CASCADE,
        statement TEXT NOT NULL,
        unit_type TEXT NOT NULL DEFAULT 'fact',
        entities TEXT NOT NULL DEFAULT '[]',
        source_url TEXT,
        source_domain TEXT,
        source_title TEXT,
        location TEXT,
        topic TEXT,
        embedding BLOB,
        event_date TEXT,                     -- YYYY-MM-DD or NULL
        used_in_article INTEGER NOT NULL DEFAULT 0,
        source_type TEXT NOT NULL DEFAULT 'scout',
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_units_user ON information_units(user_id, used_in_article, created_at);

    CREATE TABLE IF NOT EXISTS bajour_drafts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        village_id TEXT NOT NULL,
        village_name TEXT NOT NULL,
        title TEXT,
        body TEXT NOT NULL,
        selected_unit_ids TEXT NOT NULL DEFAULT '[]',
        custom_system_prompt TEXT,
        verification_status TEXT NOT NULL DEFAULT 'pending',
        verification_responses TEXT NOT NULL DEFAULT '[]',
        verification_sent_at REAL,
        verification_resolved_at REAL,
        verification_timeout_at REAL,
        whatsapp_message_ids TEXT NOT NULL DEFAULT '[]',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_drafts_verification
        ON bajour_drafts(verification_status, verification_sent_at);
    """

    # Execution columns writable through update_execution
    EXECUTION_COLUMNS = frozenset({
        "status",
        "completed_at",
        "change_status",
        "criteria_matched",
        "summary_text",
        "summary_embedding",
        "is_duplicate",
        "duplicate_similarity",
        "notification_sent",
        "notification_error",
        "units_extracted",
        "scrape_duration_ms",
        "error_message",
    })

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        """Initialize database connection.

        Creates the database file if it doesn't exist and sets up
        the schema. Uses WAL mode for better concurrent access. The
        connection may be used from the server's event-loop thread.

        Args:
            path: Path to SQLite database file
        """
        self.path = Path(path)
        self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        logger.debug("Database initialized | path=%s", self.path)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_scout(row: sqlite3.Row) -> Scout:
        location = json.loads(row["location"]) if row["location"] else None
        return Scout(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            url=row["url"],
            criteria=row["criteria"] or "",
            location=Location(**location) if location else None,
            topic=row["topic"],
            notification_email=row["notification_email"],
            is_active=bool(row["is_active"]),
            frequency=Frequency(row["frequency"]),
            consecutive_failures=row["consecutive_failures"],
            last_run_at=_from_ts(row["last_run_at"]),
            created_at=_from_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> ScoutExecution:
        embedding = row["summary_embedding"]
        matched = row["criteria_matched"]
        return ScoutExecution(
            id=row["id"],
            scout_id=row["scout_id"],
            user_id=row["user_id"],
            status=ExecutionStatus(row["status"]),
            started_at=_from_ts(row["started_at"]),
            completed_at=_from_ts(row["completed_at"]),
            change_status=ChangeStatus(row["change_status"]) if row["change_status"] else None,
            criteria_matched=None if matched is None else bool(matched),
            summary_text=row["summary_text"],
            summary_embedding=_blob_to_embedding(embedding).tolist() if embedding else None,
            is_duplicate=bool(row["is_duplicate"]),
            duplicate_similarity=row["duplicate_similarity"],
            notification_sent=bool(row["notification_sent"]),
            notification_error=row["notification_error"],
            units_extracted=row["units_extracted"],
            scrape_duration_ms=row["scrape_duration_ms"],
            error_message=row["error_message"],
        )

    @staticmethod
    def _row_to_unit(row: sqlite3.Row) -> InformationUnit:
        location = json.loads(row["location"]) if row["location"] else None
        return InformationUnit(
            id=row["id"],
            user_id=row["user_id"],
            scout_id=row["scout_id"],
            execution_id=row["execution_id"],
            statement=row["statement"],
            unit_type=UnitType(row["unit_type"]),
            entities=json.loads(row["entities"] or "[]"),
            source_url=row["source_url"],
            source_domain=row["source_domain"],
            source_title=row["source_title"],
            location=Location(**location) if location else None,
            topic=row["topic"],
            event_date=row["event_date"],
            used_in_article=bool(row["used_in_article"]),
            source_type=SourceType(row["source_type"]),
            created_at=_from_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_draft(row: sqlite3.Row) -> BajourDraft:
        return BajourDraft(
            id=row["id"],
            user_id=row["user_id"],
            village_id=row["village_id"],
            village_name=row["village_name"],
            title=row["title"],
            body=row["body"],
            selected_unit_ids=json.loads(row["selected_unit_ids"] or "[]"),
            custom_system_prompt=row["custom_system_prompt"],
            verification_status=VerificationStatus(row["verification_status"]),
            verification_responses=[
                VerificationResponse(**r) for r in json.loads(row["verification_responses"] or "[]")
            ],
            verification_sent_at=_from_ts(row["verification_sent_at"]),
            verification_resolved_at=_from_ts(row["verification_resolved_at"]),
            verification_timeout_at=_from_ts(row["verification_timeout_at"]),
            whatsapp_message_ids=json.loads(row["whatsapp_message_ids"] or "[]"),
            created_at=_from_ts(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Scouts
    # ------------------------------------------------------------------

    def create_scout(
        self,
        user_id: str,
        name: str,
        url: str,
        criteria: str = "",
        location: Location | None = None,
        topic: str | None = None,
        notification_email: str | None = None,
        frequency: Frequency = Frequency.DAILY,
        is_active: bool = True,
    ) -> Scout:
        """Insert a new scout and return it."""
        scout_id = _new_id()
        self.conn.execute(
            """
            INSERT INTO scouts
            (id, user_id, name, url, criteria, location, topic, notification_email,
             is_active, frequency, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                scout_id,
                user_id,
                name,
                url,
                criteria or "",
                _json_or_none(location.model_dump() if location else None),
                topic,
                notification_email,
                int(is_active),
                Frequency(frequency).value,
                _to_ts(_now()),
            ),
        )
        self.conn.commit()
        logger.debug("Scout created | id=%s name=%s", scout_id, name)
        return self.get_scout(scout_id)

    def get_scout(self, scout_id: str, user_id: str | None = None) -> Scout | None:
        """Get a scout by id, optionally restricted to one owner."""
        query = "SELECT * FROM scouts WHERE id = ?"
        params: list[Any] = [scout_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(query, params).fetchone()
        return self._row_to_scout(row) if row else None

    def list_scouts(self, user_id: str | None = None, active_only: bool = False) -> list[Scout]:
        query = "SELECT * FROM scouts WHERE 1=1"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at"
        return [self._row_to_scout(row) for row in self.conn.execute(query, params).fetchall()]

    def due_scouts(self, now: datetime | None = None) -> list[Scout]:
        """Active scouts whose cadence has elapsed (never-run scouts included)."""
        now = now or _now()
        return [s for s in self.list_scouts(active_only=True) if s.is_due(now)]

    def record_scout_success(self, scout_id: str, now: datetime | None = None) -> None:
        """Stamp last_run_at and reset the failure counter."""
        self.conn.execute(
            "UPDATE scouts SET last_run_at = ?, consecutive_failures = 0 WHERE id = ?",
            (_to_ts(now or _now()), scout_id),
        )
        self.conn.commit()

    def record_scout_failure(self, scout_id: str) -> None:
        """Increment the consecutive failure counter."""
        self.conn.execute(
            "UPDATE scouts SET consecutive_failures = consecutive_failures + 1 WHERE id = ?",
            (scout_id,),
        )
        self.conn.commit()

    def delete_scout(self, scout_id: str, user_id: str) -> bool:
        """Delete a scout with its executions and units."""
        cursor = self.conn.execute(
            "DELETE FROM scouts WHERE id = ? AND user_id = ?",
            (scout_id, user_id),
        )
        self.conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Scout deleted | id=%s", scout_id)
        return deleted

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def create_execution(self, scout_id: str, user_id: str, now: datetime | None = None) -> ScoutExecution:
        """Insert a new running execution."""
        execution_id = _new_id()
        self.conn.execute(
            "INSERT INTO scout_executions (id, scout_id, user_id, status, started_at) VALUES (?, ?, ?, ?, ?)",
            (execution_id, scout_id, user_id, ExecutionStatus.RUNNING.value, _to_ts(now or _now())),
        )
        self.conn.commit()
        return self.get_execution(execution_id)

    def find_running_execution(self, scout_id: str, since: datetime) -> str | None:
        """Id of a running execution for the scout started at or after `since`."""
        row = self.conn.execute(
            """
            SELECT id FROM scout_executions
            WHERE scout_id = ? AND status = ? AND started_at >= ?
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (scout_id, ExecutionStatus.RUNNING.value, _to_ts(since)),
        ).fetchone()
        return row["id"] if row else None

    def get_execution(self, execution_id: str, user_id: str | None = None) -> ScoutExecution | None:
        query = "SELECT * FROM scout_executions WHERE id = ?"
        params: list[Any] = [execution_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(query, params).fetchone()
        return self._row_to_execution(row) if row else None

    def list_executions(self, scout_id: str, user_id: str | None = None, limit: int = 20) -> list[ScoutExecution]:
        """Most recent executions of a scout, newest first."""
        query = "SELECT * FROM scout_executions WHERE scout_id = ?"
        params: list[Any] = [scout_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_execution(row) for row in self.conn.execute(query, params).fetchall()]

    def recent_summaries(self, scout_id: str, limit: int = 5) -> list[str]:
        """Non-null summaries of the scout's most recent completed executions."""
        cursor = self.conn.execute(
            """
            SELECT summary_text FROM scout_executions
            WHERE scout_id = ? AND status = ? AND summary_text IS NOT NULL
            ORDER BY started_at DESC, rowid DESC
            LIMIT ?
            """,
            (scout_id, ExecutionStatus.COMPLETED.value, limit),
        )
        return [row["summary_text"] for row in cursor.fetchall() if row["summary_text"]]

    def check_duplicate_execution(
        self,
        scout_id: str,
        embedding: list[float],
        threshold: float,
        lookback_days: int,
        now: datetime | None = None,
    ) -> tuple[bool, float | None]:
        """Compare a summary embedding with the scout's recent completed runs.

        Args:
            scout_id: Scout whose history is searched
            embedding: Summary embedding of the current run
            threshold: Similarity at or above which the run is a duplicate
            lookback_days: History window

        Returns:
            Tuple of (is_duplicate, max similarity or None if no history)
        """
        cutoff = (now or _now()) - timedelta(days=lookback_days)
        cursor = self.conn.execute(
            """
            SELECT id, summary_embedding FROM scout_executions
            WHERE scout_id = ? AND status = ? AND summary_embedding IS NOT NULL AND started_at >= ?
            """,
            (scout_id, ExecutionStatus.COMPLETED.value, _to_ts(cutoff)),
        )

        max_similarity: float | None = None
        for row in cursor.fetchall():
            stored = _blob_to_embedding(row["summary_embedding"])
            if len(stored) != len(embedding):
                logger.debug("Skipping embedding with other dimension | execution=%s", row["id"])
                continue
            similarity = cosine_similarity(embedding, stored)
            if max_similarity is None or similarity > max_similarity:
                max_similarity = similarity

        if max_similarity is None:
            return False, None
        return max_similarity >= threshold, max_similarity

    def update_execution(self, execution_id: str, **fields: Any) -> None:
        """Update execution columns (last write wins).

        Accepts enums, bools, datetimes and embedding lists and converts
        them to their stored representation.
        """
        unknown = set(fields) - self.EXECUTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown execution columns: {sorted(unknown)}")
        if not fields:
            return

        values: list[Any] = []
        for key, value in fields.items():
            if key == "summary_embedding" and value is not None:
                value = _embedding_to_blob(value)
            elif isinstance(value, datetime):
                value = _to_ts(value)
            elif isinstance(value, (ExecutionStatus, ChangeStatus)):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in fields)
        self.conn.execute(
            f"UPDATE scout_executions SET {assignments} WHERE id = ?",
            (*values, execution_id),
        )
        self.conn.commit()

    # ------------------------------------------------------------------
    # Information units
    # ------------------------------------------------------------------

    def insert_unit(
        self,
        user_id: str,
        statement: str,
        unit_type: UnitType = UnitType.FACT,
        entities: list[str] | None = None,
        embedding: list[float] | None = None,
        scout_id: str | None = None,
        execution_id: str | None = None,
        source_url: str | None = None,
        source_domain: str | None = None,
        source_title: str | None = None,
        location: Location | None = None,
        topic: str | None = None,
        event_date: str | None = None,
        source_type: SourceType = SourceType.SCOUT,
    ) -> str:
        """Insert one information unit and return its id."""
        unit_id = _new_id()
        self.conn.execute(
            """
            INSERT INTO information_units
            (id, user_id, scout_id, execution_id, statement, unit_type, entities,
             source_url, source_domain, source_title, location, topic, embedding,
             event_date, source_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                unit_id,
                user_id,
                scout_id,
                execution_id,
                statement,
                UnitType(unit_type).value,
                json.dumps(entities or [], ensure_ascii=False),
                source_url,
                source_domain,
                source_title,
                _json_or_none(location.model_dump() if location else None),
                topic,
                _embedding_to_blob(embedding) if embedding is not None else None,
                event_date,
                SourceType(source_type).value,
                _to_ts(_now()),
            ),
        )
        self.conn.commit()
        return unit_id

    def _unit_filters(
        self,
        user_id: str,
        location_city: str | None,
        topic: str | None,
        unused_only: bool,
        scout_id: str | None = None,
    ) -> tuple[str, list[Any]]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if location_city:
            clauses.append("json_extract(location, '$.city') = ?")
            params.append(location_city)
        if topic:
            clauses.append("topic LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(topic)}%")
        if unused_only:
            clauses.append("used_in_article = 0")
        if scout_id:
            clauses.append("scout_id = ?")
            params.append(scout_id)
        return " AND ".join(clauses), params

    def list_units(
        self,
        user_id: str,
        location_city: str | None = None,
        topic: str | None = None,
        unused_only: bool = True,
        scout_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[InformationUnit]:
        """List a user's units, newest first. Limit is capped at 100."""
        where, params = self._unit_filters(user_id, location_city, topic, unused_only, scout_id)
        cursor = self.conn.execute(
            f"""
            SELECT * FROM information_units WHERE {where}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (*params, max(1, min(limit, 100)), max(0, offset)),
        )
        return [self._row_to_unit(row) for row in cursor.fetchall()]

    def recent_unused_units(self, user_id: str, scout_id: str, limit: int = 100) -> list[InformationUnit]:
        """A scout's unused units, latest event date first (undated last), then newest."""
        cursor = self.conn.execute(
            """
            SELECT * FROM information_units
            WHERE user_id = ? AND scout_id = ? AND used_in_article = 0
            ORDER BY event_date IS NULL, event_date DESC, created_at DESC, rowid DESC
            LIMIT ?
            """,
            (user_id, scout_id, max(1, limit)),
        )
        return [self._row_to_unit(row) for row in cursor.fetchall()]

    def get_units(self, user_id: str, unit_ids: list[str]) -> list[InformationUnit]:
        """Fetch the user's units among the given ids (others are ignored)."""
        if not unit_ids:
            return []
        placeholders = ",".join("?" * len(unit_ids))
        cursor = self.conn.execute(
            f"SELECT * FROM information_units WHERE user_id = ? AND id IN ({placeholders}) ORDER BY created_at",
            (user_id, *unit_ids),
        )
        return [self._row_to_unit(row) for row in cursor.fetchall()]

    def search_units(
        self,
        user_id: str,
        query_embedding: list[float],
        location_city: str | None = None,
        topic: str | None = None,
        unused_only: bool = True,
        min_similarity: float = 0.3,
        limit: int = 20,
    ) -> list[InformationUnit]:
        """Rank the user's units by cosine similarity to a query embedding.

        Returns:
            Units with similarity >= min_similarity, best first, with the
            `similarity` field set. Limit is capped at 50.
        """
        where, params = self._unit_filters(user_id, location_city, topic, unused_only)
        cursor = self.conn.execute(
            f"SELECT * FROM information_units WHERE {where} AND embedding IS NOT NULL",
            params,
        )

        hits: list[InformationUnit] = []
        for row in cursor.fetchall():
            stored = _blob_to_embedding(row["embedding"])
            if len(stored) != len(query_embedding):
                continue
            similarity = cosine_similarity(query_embedding, stored)
            if similarity >= min_similarity:
                unit = self._row_to_unit(row)
                unit.similarity = similarity
                hits.append(unit)

        hits.sort(key=lambda u: u.similarity, reverse=True)
        return hits[: max(1, min(limit, 50))]

    def mark_units_used(self, user_id: str, unit_ids: list[str]) -> int:
        """Mark the user's units as used in an article. Returns rows updated."""
        if not unit_ids:
            return 0
        placeholders = ",".join("?" * len(unit_ids))
        cursor = self.conn.execute(
            f"UPDATE information_units SET used_in_article = 1 WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *unit_ids),
        )
        self.conn.commit()
        return cursor.rowcount

    def unit_locations(self, user_id: str) -> list[dict[str, Any]]:
        """Distinct cities of the user's unused units with counts, most first."""
        cursor = self.conn.execute(
            """
            SELECT json_extract(location, '$.city') AS city,
                   json_extract(location, '$.state') AS state,
                   json_extract(location, '$.country') AS country,
                   COUNT(*) AS count
            FROM information_units
            WHERE user_id = ? AND used_in_article = 0 AND location IS NOT NULL
              AND json_extract(location, '$.city') IS NOT NULL
            GROUP BY city
            ORDER BY count DESC, city
            """,
            (user_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(
        self,
        user_id: str,
        village_id: str,
        village_name: str,
        body: str,
        title: str | None = None,
        selected_unit_ids: list[str] | None = None,
        custom_system_prompt: str | None = None,
    ) -> BajourDraft:
        draft_id = _new_id()
        now = _to_ts(_now())
        self.conn.execute(
            """
            INSERT INTO bajour_drafts
            (id, user_id, village_id, village_name, title, body, selected_unit_ids,
             custom_system_prompt, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                draft_id,
                user_id,
                village_id,
                village_name,
                title,
                body,
                json.dumps(selected_unit_ids or []),
                custom_system_prompt,
                now,
                now,
            ),
        )
        self.conn.commit()
        return self.get_draft(draft_id)

    def get_draft(self, draft_id: str, user_id: str | None = None) -> BajourDraft | None:
        query = "SELECT * FROM bajour_drafts WHERE id = ?"
        params: list[Any] = [draft_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(query, params).fetchone()
        return self._row_to_draft(row) if row else None

    def mark_draft_sent(
        self,
        draft_id: str,
        message_ids: list[str],
        sent_at: datetime,
        timeout_at: datetime,
    ) -> None:
        """Record a verification send and reset the previous round."""
        self.conn.execute(
            """
            UPDATE bajour_drafts
            SET verification_sent_at = ?, verification_timeout_at = ?, whatsapp_message_ids = ?,
                verification_responses = '[]', verification_status = ?,
                verification_resolved_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (
                _to_ts(sent_at),
                _to_ts(timeout_at),
                json.dumps(message_ids),
                VerificationStatus.PENDING.value,
                _to_ts(_now()),
                draft_id,
            ),
        )
        self.conn.commit()

    def pending_sent_drafts(self) -> list[BajourDraft]:
        """Drafts awaiting answers: pending, sent, unresolved; newest send first."""
        cursor = self.conn.execute(
            """
            SELECT * FROM bajour_drafts
            WHERE verification_status = ? AND verification_sent_at IS NOT NULL
              AND verification_resolved_at IS NULL
            ORDER BY verification_sent_at DESC
            """,
            (VerificationStatus.PENDING.value,),
        )
        return [self._row_to_draft(row) for row in cursor.fetchall()]

    def update_draft_verification(
        self,
        draft_id: str,
        responses: list[VerificationResponse],
        status: VerificationStatus,
        resolved_at: datetime | None,
    ) -> None:
        """Store collected responses and the resulting status."""
        self.conn.execute(
            """
            UPDATE bajour_drafts
            SET verification_responses = ?, verification_status = ?,
                verification_resolved_at = COALESCE(?, verification_resolved_at), updated_at = ?
            WHERE id = ?
            """,
            (
                json.dumps([r.model_dump(mode="json") for r in responses], ensure_ascii=False),
                VerificationStatus(status).value,
                _to_ts(resolved_at),
                _to_ts(_now()),
                draft_id,
            ),
        )
        self.conn.commit()

    def resolve_timeouts(self, now: datetime | None = None) -> int:
        """Confirm pending drafts whose timeout has passed. Returns count."""
        now_ts = _to_ts(now or _now())
        cursor = self.conn.execute(
            """
            UPDATE bajour_drafts
            SET verification_status = ?, verification_resolved_at = ?, updated_at = ?
            WHERE verification_status = ? AND verification_timeout_at IS NOT NULL
              AND verification_timeout_at < ? AND verification_resolved_at IS NULL
            """,
            (
                VerificationStatus.CONFIRMED.value,
                now_ts,
                now_ts,
                VerificationStatus.PENDING.value,
                now_ts,
            ),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.info("Verification timeouts resolved | drafts=%d", cursor.rowcount)
        return cursor.rowcount

    def override_draft_status(
        self,
        draft_id: str,
        user_id: str,
        status: VerificationStatus,
        now: datetime | None = None,
    ) -> BajourDraft | None:
        """Owner override of the verification status.

        Stamps verification_resolved_at unless the new status is pending.
        Returns None when the draft does not exist for this user.
        """
        status = VerificationStatus(status)
        now_ts = _to_ts(now or _now())
        if status == VerificationStatus.PENDING:
            cursor = self.conn.execute(
                "UPDATE bajour_drafts SET verification_status = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (status.value, now_ts, draft_id, user_id),
            )
        else:
            cursor = self.conn.execute(
                """
                UPDATE bajour_drafts
                SET verification_status = ?, verification_resolved_at = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (status.value, now_ts, now_ts, draft_id, user_id),
            )
        self.conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get_draft(draft_id, user_id)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        """Get database statistics.

        Returns:
            Dictionary with scout, execution, unit and draft counts
        """
        row = self.conn.execute(
            "SELECT COUNT(*) AS scouts, SUM(is_active) AS active FROM scouts"
        ).fetchone()
        exec_rows = self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM scout_executions GROUP BY status"
        ).fetchall()
        unit_row = self.conn.execute(
            "SELECT COUNT(*) AS units, SUM(used_in_article) AS used FROM information_units"
        ).fetchone()
        draft_row = self.conn.execute(
            "SELECT COUNT(*) AS drafts, SUM(verification_status = 'pending') AS pending FROM bajour_drafts"
        ).fetchone()

        by_status = {r["status"]: r["n"] for r in exec_rows}
        return {
            "scouts": row["scouts"] or 0,
            "active_scouts": row["active"] or 0,
            "executions_completed": by_status.get("completed", 0),
            "executions_failed": by_status.get("failed", 0),
            "executions_running": by_status.get("running", 0),
            "units": unit_row["units"] or 0,
            "units_used": unit_row["used"] or 0,
            "drafts": draft_row["drafts"] or 0,
            "drafts_pending": draft_row["pending"] or 0,
        }

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Database":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
