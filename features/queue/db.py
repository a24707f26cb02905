"""
Postgres backing store for the queue audit trail.

Tables:
  queue_events   — one row per queue transition (enqueue, dispatch,
                   quarantine, circuit break, clear, pause, resume)

Rows are append-only; nothing in the dispatch path reads them back.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def is_configured() -> bool:
    return bool(config.DATABASE_URL)


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_events (
    id              BIGSERIAL PRIMARY KEY,
    event           TEXT NOT NULL,
    bead_id         TEXT,
    rig             TEXT,
    actor           TEXT,
    detail          TEXT DEFAULT '',
    data            JSONB DEFAULT '{}'::jsonb,
    occurred_at     TIMESTAMPTZ NOT NULL,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_queue_events_bead_id ON queue_events(bead_id);
CREATE INDEX IF NOT EXISTS idx_queue_events_event ON queue_events(event);
"""


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Queue audit schema initialized")
    except Exception as e:
        log.error("Failed to initialize queue audit schema: %s", e)
        raise


# ── Events ────────────────────────────────────────────────────────────

def insert_event(event: dict) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO queue_events (event, bead_id, rig, actor, detail, data, occurred_at)
            VALUES (%(event)s, %(bead_id)s, %(rig)s, %(actor)s, %(detail)s, %(data)s, %(occurred_at)s)
        """, {
            "event": event.get("event"),
            "bead_id": event.get("bead_id"),
            "rig": event.get("rig"),
            "actor": event.get("actor"),
            "detail": event.get("detail", ""),
            "data": json.dumps(event.get("data", {})),
            "occurred_at": event.get("occurred_at"),
        })


def get_events_for_bead(bead_id: str) -> list[dict]:
    """All audit events for a bead, oldest first."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM queue_events WHERE bead_id = %s ORDER BY occurred_at ASC",
            (bead_id,),
        )
        return [dict(row) for row in cur.fetchall()]


def list_events(limit: int = 100, event: str | None = None) -> list[dict]:
    """Recent audit events, newest first."""
    with get_cursor() as cur:
        if event:
            cur.execute(
                "SELECT * FROM queue_events WHERE event = %s ORDER BY occurred_at DESC LIMIT %s",
                (event, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM queue_events ORDER BY occurred_at DESC LIMIT %s",
                (limit,),
            )
        return [dict(row) for row in cur.fetchall()]
