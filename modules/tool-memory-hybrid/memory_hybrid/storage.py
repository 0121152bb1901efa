"""SQLite-backed memory storage with a lexical index and an int8 vector index."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import StoreError
from .models import MemoryKind, MemoryRecord, VectorEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_RECORD_COLUMNS = (
    "id, persona_id, user_id, chat_id, role, text, kind, emotion, "
    "importance, created_at, last_accessed"
)


class MemoryStorage:
    """Three logical tables sharing one primary key.

    Design decisions:
    - memories owns the canonical record; memories_fts (lexical) and
      memory_vectors (int8 + scale) are satellite indexes keyed by memory id
    - Every write touching more than one table runs in a single transaction,
      so an index entry never outlives its record
    - Every read filters on (persona_id, user_id)
    - Vector similarity is brute force in the caller; the store only filters
      by scope and dimension
    - FTS5 when the SQLite build has it, LIKE matching otherwise
    """

    def __init__(self, db_path: str | Path):
        """Open (and create if needed) the store.

        Args:
            db_path: SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._fts_available = False
        self._conn = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        if c.execute("SELECT version FROM schema_version LIMIT 1").fetchone() is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                chat_id TEXT,
                role TEXT NOT NULL,
                text TEXT NOT NULL,
                kind TEXT NOT NULL,
                emotion TEXT,
                importance REAL NOT NULL,
                created_at INTEGER NOT NULL,
                last_accessed INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_scope_created
            ON memories(persona_id, user_id, created_at)
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_scope_chat
            ON memories(persona_id, user_id, chat_id, created_at)
        """)
        for col in ("user_id", "kind", "last_accessed"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_memories_{col} ON memories({col})")

        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
                USING fts5(memory_id UNINDEXED, text)
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, lexical search falls back to LIKE: %s", e)
            c.execute("""
                CREATE TABLE IF NOT EXISTS memories_fts (
                    memory_id TEXT PRIMARY KEY,
                    text TEXT NOT NULL
                )
            """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_vectors (
                memory_id TEXT PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE,
                dim INTEGER NOT NULL,
                q8 BLOB NOT NULL,
                scale REAL NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_memory_vectors_dim ON memory_vectors(dim)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_prefs (
                persona_id TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                enabled INTEGER NOT NULL,
                PRIMARY KEY (persona_id, owner_id)
            )
        """)
        c.commit()
        logger.info("Memory schema ready at %s (fts5=%s)", self.db_path, self._fts_available)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and commit, or roll back and raise StoreError."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"Memory store operation failed: {e}") from e
            except BaseException:
                self._conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert_one(
        self, c: sqlite3.Connection, record: MemoryRecord, vector: Optional[VectorEntry]
    ) -> None:
        row = record.dict_for_storage()
        c.execute(
            f"INSERT INTO memories ({_RECORD_COLUMNS}) VALUES "
            "(:id, :persona_id, :user_id, :chat_id, :role, :text, :kind, :emotion, "
            ":importance, :created_at, :last_accessed)",
            row,
        )
        c.execute(
            "INSERT INTO memories_fts (memory_id, text) VALUES (?, ?)",
            (record.id, record.text),
        )
        if vector is not None:
            if vector.memory_id != record.id:
                raise ValueError(f"Vector for {vector.memory_id} attached to record {record.id}")
            c.execute(
                "INSERT OR REPLACE INTO memory_vectors (memory_id, dim, q8, scale) "
                "VALUES (?, ?, ?, ?)",
                (vector.memory_id, vector.dim, vector.q8, vector.scale),
            )

    def insert(self, record: MemoryRecord, vector: Optional[VectorEntry] = None) -> None:
        """Write a record, its lexical entry and (optionally) its vector atomically.

        Raises:
            StoreError: If the transaction fails (nothing is written)
        """
        self.insert_many([(record, vector)])

    def insert_many(self, items: list[tuple[MemoryRecord, Optional[VectorEntry]]]) -> None:
        """Write several record/vector pairs in one transaction."""
        if not items:
            return
        with self._transaction() as c:
            for record, vector in items:
                self._insert_one(c, record, vector)

    def update_text(
        self,
        memory_id: str,
        persona_id: str,
        user_id: str,
        text: str,
        vector: Optional[VectorEntry] = None,
    ) -> bool:
        """Replace a record's text.

        The lexical entry is deleted and reinserted; the vector is replaced
        when one is given and dropped otherwise, since it no longer matches.

        Returns:
            True if the record exists in this scope
        """
        with self._transaction() as c:
            cur = c.execute(
                "UPDATE memories SET text = ? WHERE id = ? AND persona_id = ? AND user_id = ?",
                (text, memory_id, persona_id, user_id),
            )
            if cur.rowcount == 0:
                return False
            c.execute("DELETE FROM memories_fts WHERE memory_id = ?", (memory_id,))
            c.execute(
                "INSERT INTO memories_fts (memory_id, text) VALUES (?, ?)", (memory_id, text)
            )
            c.execute("DELETE FROM memory_vectors WHERE memory_id = ?", (memory_id,))
            if vector is not None:
                c.execute(
                    "INSERT INTO memory_vectors (memory_id, dim, q8, scale) VALUES (?, ?, ?, ?)",
                    (memory_id, vector.dim, vector.q8, vector.scale),
                )
            return True

    def touch(self, memory_ids: list[str], timestamp: int) -> None:
        """Set last_accessed for the given records. Last writer wins."""
        if not memory_ids:
            return
        placeholders = ",".join("?" * len(memory_ids))
        with self._transaction() as c:
            c.execute(
                f"UPDATE memories SET last_accessed = ? WHERE id IN ({placeholders})",
                (timestamp, *memory_ids),
            )

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def _delete_where(self, where: str, params: tuple) -> int:
        """Delete matching records together with their index entries."""
        with self._transaction() as c:
            subquery = f"SELECT id FROM memories WHERE {where}"
            c.execute(f"DELETE FROM memories_fts WHERE memory_id IN ({subquery})", params)
            c.execute(f"DELETE FROM memory_vectors WHERE memory_id IN ({subquery})", params)
            return c.execute(f"DELETE FROM memories WHERE {where}", params).rowcount

    def delete(self, memory_id: str, persona_id: str, user_id: str) -> bool:
        return (
            self._delete_where(
                "id = ? AND persona_id = ? AND user_id = ?", (memory_id, persona_id, user_id)
            )
            > 0
        )

    def delete_all(self, persona_id: str, user_id: str) -> int:
        return self._delete_where("persona_id = ? AND user_id = ?", (persona_id, user_id))

    def delete_all_for_user(self, user_id: str) -> int:
        return self._delete_where("user_id = ?", (user_id,))

    def delete_all_not_for_user(self, user_id: str) -> int:
        """Remove every record not owned by user_id (multi-account repair)."""
        return self._delete_where("user_id != ?", (user_id,))

    def prune_low_importance(
        self, persona_id: str, user_id: str, before_ms: int, min_importance: float
    ) -> int:
        return self._delete_where(
            "persona_id = ? AND user_id = ? AND created_at < ? AND importance < ?",
            (persona_id, user_id, before_ms, min_importance),
        )

    def purge_stale_vectors(self, dim: int) -> int:
        """Delete vectors whose dimension differs from dim. Records are kept."""
        with self._transaction() as c:
            return c.execute("DELETE FROM memory_vectors WHERE dim != ?", (dim,)).rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            persona_id=row["persona_id"],
            user_id=row["user_id"],
            chat_id=row["chat_id"],
            role=row["role"],
            text=row["text"],
            kind=row["kind"],
            emotion=row["emotion"],
            importance=row["importance"],
            created_at=row["created_at"],
            last_accessed=row["last_accessed"],
        )

    def get(self, memory_id: str, persona_id: str, user_id: str) -> Optional[MemoryRecord]:
        with self._transaction() as c:
            row = c.execute(
                f"SELECT {_RECORD_COLUMNS} FROM memories "
                "WHERE id = ? AND persona_id = ? AND user_id = ?",
                (memory_id, persona_id, user_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_many(
        self, memory_ids: list[str], persona_id: str, user_id: str
    ) -> dict[str, MemoryRecord]:
        if not memory_ids:
            return {}
        placeholders = ",".join("?" * len(memory_ids))
        with self._transaction() as c:
            rows = c.execute(
                f"SELECT {_RECORD_COLUMNS} FROM memories "
                f"WHERE id IN ({placeholders}) AND persona_id = ? AND user_id = ?",
                (*memory_ids, persona_id, user_id),
            ).fetchall()
        return {row["id"]: self._row_to_record(row) for row in rows}

    def search_lexical(
        self,
        persona_id: str,
        user_id: str,
        terms: list[str],
        limit: int,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> list[str]:
        """Ids of records whose text matches any term, best match first.

        Args:
            terms: Lowercase content words (see heuristics.query_terms)
            limit: Max ids to return
            start_ms, end_ms: Optional inclusive created_at window

        Returns:
            Memory ids ordered by BM25 (FTS5) or recency (LIKE fallback)
        """
        if not terms:
            return []

        scope = "m.persona_id = ? AND m.user_id = ?"
        params: list = [persona_id, user_id]
        if start_ms is not None:
            scope += " AND m.created_at >= ?"
            params.append(start_ms)
        if end_ms is not None:
            scope += " AND m.created_at <= ?"
            params.append(end_ms)

        if self._fts_available:
            match = " OR ".join(f'"{term}"' for term in terms)
            sql = (
                "SELECT m.id FROM memories_fts JOIN memories m ON m.id = memories_fts.memory_id "
                f"WHERE memories_fts MATCH ? AND {scope} "
                "ORDER BY bm25(memories_fts) LIMIT ?"
            )
            args = (match, *params, limit)
        else:
            likes = " OR ".join("f.text LIKE ?" for _ in terms)
            sql = (
                "SELECT m.id FROM memories_fts f JOIN memories m ON m.id = f.memory_id "
                f"WHERE ({likes}) AND {scope} ORDER BY m.created_at DESC LIMIT ?"
            )
            args = (*(f"%{term}%" for term in terms), *params, limit)

        with self._transaction() as c:
            rows = c.execute(sql, args).fetchall()
        return [row[0] for row in rows]

    def vectors(
        self,
        persona_id: str,
        user_id: str,
        dim: Optional[int] = None,
        memory_ids: Optional[list[str]] = None,
    ) -> list[VectorEntry]:
        """Vectors in scope, optionally restricted to one dimension and to given ids."""
        sql = (
            "SELECT v.memory_id, v.dim, v.q8, v.scale FROM memory_vectors v "
            "JOIN memories m ON m.id = v.memory_id "
            "WHERE m.persona_id = ? AND m.user_id = ?"
        )
        params: list = [persona_id, user_id]
        if dim is not None:
            sql += " AND v.dim = ?"
            params.append(dim)
        if memory_ids is not None:
            if not memory_ids:
                return []
            sql += f" AND v.memory_id IN ({','.join('?' * len(memory_ids))})"
            params.extend(memory_ids)

        with self._transaction() as c:
            rows = c.execute(sql, params).fetchall()
        return [
            VectorEntry(memory_id=row[0], dim=row[1], q8=bytes(row[2]), scale=row[3])
            for row in rows
        ]

    def records_between(
        self, persona_id: str, user_id: str, start_ms: int, end_ms: int, limit: int
    ) -> list[MemoryRecord]:
        """Records created in [start_ms, end_ms], newest first."""
        with self._transaction() as c:
            rows = c.execute(
                f"SELECT {_RECORD_COLUMNS} FROM memories "
                "WHERE persona_id = ? AND user_id = ? AND created_at >= ? AND created_at <= ? "
                "ORDER BY created_at DESC LIMIT ?",
                (persona_id, user_id, start_ms, end_ms, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def recent(
        self, persona_id: str, user_id: str, limit: int, chat_id: Optional[str] = None
    ) -> list[MemoryRecord]:
        """Newest records in scope, optionally for a single chat."""
        sql = f"SELECT {_RECORD_COLUMNS} FROM memories WHERE persona_id = ? AND user_id = ?"
        params: list = [persona_id, user_id]
        if chat_id is not None:
            sql += " AND chat_id = ?"
            params.append(chat_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._transaction() as c:
            rows = c.execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def feed(
        self,
        persona_id: str,
        user_id: str,
        kind: Optional[MemoryKind] = None,
        query: Optional[str] = None,
    ) -> list[MemoryRecord]:
        """All records in scope, newest first, with optional kind and substring filters."""
        sql = f"SELECT {_RECORD_COLUMNS} FROM memories WHERE persona_id = ? AND user_id = ?"
        params: list = [persona_id, user_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        if query:
            sql += " AND instr(lower(text), ?) > 0"
            params.append(query.lower())
        sql += " ORDER BY created_at DESC"

        with self._transaction() as c:
            rows = c.execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self, persona_id: str, user_id: str) -> int:
        with self._transaction() as c:
            return c.execute(
                "SELECT COUNT(*) FROM memories WHERE persona_id = ? AND user_id = ?",
                (persona_id, user_id),
            ).fetchone()[0]

    def counts_by_kind(self, persona_id: str, user_id: str) -> dict[MemoryKind, int]:
        with self._transaction() as c:
            rows = c.execute(
                "SELECT kind, COUNT(*) FROM memories WHERE persona_id = ? AND user_id = ? "
                "GROUP BY kind",
                (persona_id, user_id),
            ).fetchall()
        return {MemoryKind(row[0]): row[1] for row in rows}

    def total_count(self, user_id: Optional[str] = None) -> int:
        with self._transaction() as c:
            if user_id is None:
                return c.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            return c.execute(
                "SELECT COUNT(*) FROM memories WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    def table_counts(self) -> dict[str, int]:
        """Row counts of the three memory tables (records, lexical, vectors)."""
        with self._transaction() as c:
            return {
                table: c.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("memories", "memories_fts", "memory_vectors")
            }

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def set_enabled(self, persona_id: str, owner_id: str, enabled: bool) -> None:
        with self._transaction() as c:
            c.execute(
                "INSERT OR REPLACE INTO memory_prefs (persona_id, owner_id, enabled) "
                "VALUES (?, ?, ?)",
                (persona_id, owner_id, int(enabled)),
            )

    def is_enabled(self, persona_id: str, owner_id: str) -> bool:
        """Memory is enabled unless explicitly turned off."""
        with self._transaction() as c:
            row = c.execute(
                "SELECT enabled FROM memory_prefs WHERE persona_id = ? AND owner_id = ?",
                (persona_id, owner_id),
            ).fetchone()
        return True if row is None else bool(row[0])

    def clear_preferences(self, owner_id: str) -> int:
        with self._transaction() as c:
            return c.execute(
                "DELETE FROM memory_prefs WHERE owner_id = ?", (owner_id,)
            ).rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
