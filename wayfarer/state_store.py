from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from wayfarer.errors import StoreError
from wayfarer.models import Location


LOCATION_COLUMNS = (
    "id",
    "name",
    "address",
    "latitude",
    "longitude",
    "start_time",
    "end_time",
    "external_event_id",
    "sync_status",
    "last_local_modification_date",
    "last_sync_date",
    "is_user_modified",
    "change_fingerprint",
    "notes",
    "tags_json",
    "is_archived",
    "geocoding_status",
    "geocoding_attempts",
    "last_geocoding_attempt",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _location_to_row(location: Location) -> tuple[Any, ...]:
    payload = location.to_dict()
    payload["tags_json"] = json.dumps(payload.pop("tags"), ensure_ascii=False)
    payload["is_user_modified"] = int(payload["is_user_modified"])
    payload["is_archived"] = int(payload["is_archived"])
    return tuple(payload[column] for column in LOCATION_COLUMNS)


def _row_to_location(row: sqlite3.Row) -> Location:
    item = dict(row)
    item["tags"] = json.loads(item.pop("tags_json") or "[]")
    return Location.from_dict(item)


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS locations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            address TEXT,
            latitude REAL NOT NULL DEFAULT 0,
            longitude REAL NOT NULL DEFAULT 0,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            external_event_id TEXT UNIQUE,
            sync_status TEXT NOT NULL,
            last_local_modification_date TEXT NOT NULL,
            last_sync_date TEXT,
            is_user_modified INTEGER NOT NULL DEFAULT 0,
            change_fingerprint TEXT,
            notes TEXT,
            tags_json TEXT NOT NULL DEFAULT '[]',
            is_archived INTEGER NOT NULL DEFAULT 0,
            geocoding_status TEXT NOT NULL,
            geocoding_attempts INTEGER NOT NULL DEFAULT 0,
            last_geocoding_attempt TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_locations_start_time ON locations(start_time);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            geocoding_failures INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            location_id TEXT NOT NULL,
            external_event_id TEXT,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def session(self) -> "StoreSession":
        return StoreSession(self)

    def load_locations(self) -> list[Location]:
        try:
            with self._lock:
                with self._connect() as conn:
                    rows = conn.execute("SELECT * FROM locations ORDER BY start_time, id").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc
        return [_row_to_location(row) for row in rows]

    def commit(self, upserts: Iterable[Location], deletes: Iterable[str]) -> None:
        """Apply one unit of work in a single transaction."""
        placeholders = ", ".join("?" for _ in LOCATION_COLUMNS)
        columns = ", ".join(LOCATION_COLUMNS)
        assignments = ", ".join(f"{column} = excluded.{column}" for column in LOCATION_COLUMNS[1:])
        upsert_sql = (
            f"INSERT INTO locations({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}"
        )
        try:
            with self._lock:
                conn = self._connect()
                try:
                    with conn:
                        for location_id in deletes:
                            conn.execute("DELETE FROM locations WHERE id = ?", (location_id,))
                        for location in upserts:
                            conn.execute(upsert_sql, _location_to_row(location))
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms)
                    VALUES (?, ?, 'running', ?, 0)
                    """,
                    (_utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        counts: dict[str, int] | None = None,
    ) -> None:
        counts = counts or {}
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, created = ?, updated = ?,
                        deleted = ?, skipped = ?, geocoding_failures = ?, errors = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(counts.get("created", 0)),
                        int(counts.get("updated", 0)),
                        int(counts.get("deleted", 0)),
                        int(counts.get("skipped", 0)),
                        int(counts.get("geocoding_failures", 0)),
                        int(counts.get("errors", 0)),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, created, updated,
                           deleted, skipped, geocoding_failures, errors
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        location_id: str,
        action: str,
        details: dict[str, Any],
        external_event_id: str | None = None,
        run_id: int | None = None,
    ) -> None:
        self.record_audit_events(
            [
                {
                    "location_id": location_id,
                    "external_event_id": external_event_id,
                    "action": action,
                    "details": details,
                }
            ],
            run_id=run_id,
        )

    def record_audit_events(self, events: list[dict[str, Any]], run_id: int | None = None) -> None:
        if not events:
            return
        created_at = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO audit_events(run_id, created_at, location_id, external_event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            run_id,
                            created_at,
                            str(item.get("location_id", "")),
                            item.get("external_event_id"),
                            str(item.get("action", "")),
                            json.dumps(item.get("details") or {}, ensure_ascii=False, default=str),
                        )
                        for item in events
                    ],
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, run_id, created_at, location_id, external_event_id, action, details_json
            FROM audit_events
        """
        params: tuple[Any, ...]
        if run_id is None:
            query += " ORDER BY id DESC LIMIT ?"
            params = (max(1, limit),)
        else:
            query += " WHERE run_id = ? ORDER BY id DESC LIMIT ?"
            params = (int(run_id), max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output


class StoreSession:
    """Unit of work over :class:`StateStore`.

    Reads see the committed rows overlaid with this session's staged changes.
    Nothing is durable until :meth:`save`.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._upserts: dict[str, Location] = {}
        self._deletes: set[str] = set()

    @property
    def has_changes(self) -> bool:
        return bool(self._upserts or self._deletes)

    def fetch(self, predicate: Callable[[Location], bool] | None = None) -> list[Location]:
        records = {location.id: location for location in self.store.load_locations()}
        for location_id in self._deletes:
            records.pop(location_id, None)
        for location_id, location in self._upserts.items():
            records[location_id] = location.clone()
        return [location for location in records.values() if predicate is None or predicate(location)]

    def get(self, location_id: str) -> Location | None:
        matches = self.fetch(lambda location: location.id == location_id)
        return matches[0] if matches else None

    def insert(self, location: Location) -> None:
        """Stage ``location`` as the value stored under its id."""
        self._deletes.discard(location.id)
        self._upserts[location.id] = location.clone()

    def delete(self, location: Location) -> None:
        self._upserts.pop(location.id, None)
        self._deletes.add(location.id)

    def save(self) -> None:
        self.store.commit(list(self._upserts.values()), sorted(self._deletes))
        self._upserts.clear()
        self._deletes.clear()

    def rollback(self) -> None:
        self._upserts.clear()
        self._deletes.clear()
