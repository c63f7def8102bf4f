"""
Persistence boundary for per-session memory.

Each session's memory (summary, entries, tool events) is saved as one JSONB
document in PostgreSQL. Without a connection every call is a no-op and the
store lives purely in process memory.
"""

import json
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class MemoryPersistence(Protocol):
    def load(self, session_id: str) -> Optional[dict]: ...

    def save(self, session_id: str, payload: dict) -> None: ...

    def delete(self, session_id: str) -> None: ...


class PostgresMemoryPersistence:
    """Stores session memory documents in the dynamic_memory_sessions table."""

    def __init__(self, pg_conn=None):
        self._pg_conn = pg_conn
        self._table_ready = False
        self._setup_table()

    def _setup_table(self):
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS dynamic_memory_sessions (
                        session_id TEXT PRIMARY KEY,
                        payload JSONB NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                self._table_ready = True
        except Exception as e:
            logger.warning("Failed to create dynamic_memory_sessions table: %s", e)

    def load(self, session_id: str) -> Optional[dict]:
        """
        Load the raw document for a session.

        Returns None when nothing is stored or the database is unreachable.
        A document that is present but not a JSON object is returned as-is;
        validating it is the store's job.
        """
        if not self._pg_conn or not self._table_ready:
            return None
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "SELECT payload FROM dynamic_memory_sessions WHERE session_id = %s",
                    (session_id,),
                )
                row = cur.fetchone()
        except Exception as e:
            logger.warning("Failed to load memory for session %s: %s", session_id, e)
            return None
        if not row:
            return None
        payload = row["payload"] if isinstance(row, dict) else row[0]
        if isinstance(payload, (str, bytes)):
            try:
                return json.loads(payload)
            except ValueError:
                return payload
        return payload

    def save(self, session_id: str, payload: dict) -> None:
        if not self._pg_conn or not self._table_ready:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO dynamic_memory_sessions (session_id, payload, updated_at)
                    VALUES (%s, %s::jsonb, now())
                    ON CONFLICT (session_id) DO UPDATE SET
                        payload = EXCLUDED.payload,
                        updated_at = now()
                    """,
                    (session_id, json.dumps(payload, ensure_ascii=False)),
                )
        except Exception as e:
            logger.warning("Failed to save memory for session %s: %s", session_id, e)

    def delete(self, session_id: str) -> None:
        if not self._pg_conn:
            return
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM dynamic_memory_sessions WHERE session_id = %s",
                    (session_id,),
                )
        except Exception as e:
            logger.warning("Failed to delete memory for session %s: %s", session_id, e)
