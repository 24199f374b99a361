# GoClaw Deployment Event Log
# Append-only, hash-chained audit trail of every orchestration run.
#
# Deployment timeline:
#   deployment.deploying → marketplace.deployment_created → marketplace.bids_received
#     → [provider.blacklisted]* → deployment.active | deployment.failed
#
# Each event stores the SHA-256 of the previous event, so editing any past
# row breaks every hash after it. verify_chain() replays the log to check.
# Payloads carry identifiers and prices only, never decrypted credentials.

import hashlib
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

log = logging.getLogger("goclaw")

DEFAULT_EVENTS_DB = os.path.join(os.path.dirname(__file__), "goclaw_events.db")


class EventType(str, Enum):
    DEPLOYMENT_CREATED = "deployment.created"
    DEPLOYMENT_PAID = "deployment.paid"
    DEPLOYMENT_DEPLOYING = "deployment.deploying"
    MARKETPLACE_DEPLOYMENT_CREATED = "marketplace.deployment_created"
    MARKETPLACE_BIDS_RECEIVED = "marketplace.bids_received"
    MARKETPLACE_DEPLOYMENT_CLOSED = "marketplace.deployment_closed"
    LEASE_CREATED = "lease.created"
    PROVIDER_BLACKLISTED = "provider.blacklisted"
    PROVIDER_UNBLACKLISTED = "provider.unblacklisted"
    DEPLOYMENT_ACTIVE = "deployment.active"
    DEPLOYMENT_FAILED = "deployment.failed"


@dataclass
class Event:
    """One immutable row in the audit log."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "deployment", "provider"
    entity_id: str = ""        # deployment id or provider address
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "orchestrator", "webhook:stripe", "admin"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field except event_hash."""
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_event(row) -> Event:
    return Event(
        event_id=row["event_id"],
        event_type=row["event_type"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        timestamp=row["timestamp"],
        actor=row["actor"],
        data=json.loads(row["data"]),
        prev_hash=row["prev_hash"] or "",
        event_hash=row["event_hash"] or "",
    )


class EventStore:
    """Append-only event store in its own SQLite file."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("GOCLAW_EVENTS_DB_PATH", DEFAULT_EVENTS_DB)
        self._append_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    actor TEXT DEFAULT '',
                    data TEXT DEFAULT '{}',
                    prev_hash TEXT DEFAULT '',
                    event_hash TEXT DEFAULT ''
                );
                CREATE INDEX IF NOT EXISTS idx_events_entity
                    ON events(entity_type, entity_id);
                CREATE INDEX IF NOT EXISTS idx_events_type
                    ON events(event_type);
            """)

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def append(self, event: Event) -> Event:
        """Link the event to the current chain head and store it."""
        with self._append_lock, self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT event_hash FROM events ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            event.event_type = EventType(event.event_type).value
            event.prev_hash = row["event_hash"] if row else ""
            event.event_hash = event.compute_hash()
            conn.execute(
                """INSERT INTO events
                   (event_id, event_type, entity_type, entity_id,
                    timestamp, actor, data, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, event.event_type, event.entity_type,
                    event.entity_id, event.timestamp, event.actor,
                    json.dumps(event.data), event.prev_hash, event.event_hash,
                ),
            )
        return event

    def record(self, event_type, entity_type, entity_id, actor="orchestrator", **data) -> Event:
        return self.append(Event(
            event_type=EventType(event_type).value,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            data=data,
        ))

    def verify_chain(self, limit: int = 0) -> dict:
        """Replay the chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        query = "SELECT * FROM events ORDER BY rowid ASC"
        params = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            evt = _row_to_event(row)
            if evt.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"prev_hash mismatch at event {evt.event_id}",
                }
            if evt.compute_hash() != evt.event_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"event_hash tampered at event {evt.event_id}",
                }
            prev_hash = evt.event_hash

        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 1000,
    ) -> list[Event]:
        clauses = []
        params = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(str(EventType(event_type).value))
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY rowid ASC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        return self.get_events(entity_type=entity_type, entity_id=entity_id, limit=10000)

    def deployment_timeline(self, deployment_id: str) -> list[dict]:
        """Every recorded step of one deployment, oldest first."""
        return [e.to_dict() for e in self.get_entity_history("deployment", deployment_id)]


# ── Singleton ─────────────────────────────────────────────────────────

_event_store: Optional[EventStore] = None


def get_event_store() -> EventStore:
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store
