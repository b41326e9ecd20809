"""MemoryStore: SQLite-backed, versioned, embedding-indexed fact storage.

Storage: <data_dir>/memory.db (one append-mostly ``memories`` table)
Versions: ``parent_id`` self-reference; superseded rows are soft-deleted
Search: cosine distance registered as a SQL function; FTS5 for keywords

Rows are never physically removed and never change except for the
``deleted`` flag going from 0 to 1. Triggers enforce both rules so that no
code path, including ad-hoc SQL, can break the audit trail.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

import numpy as np

from .embedding import Embedder
from .errors import ConfigError, EmbeddingFailure, RemindError, StoreUnavailable, UpdateFailed
from .models import Category, DeleteResult, EdgeType, MemoryRecord

log = logging.getLogger("remind.store")

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS store_meta (
    key         TEXT    PRIMARY KEY,
    value       TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS memories (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT    NOT NULL UNIQUE,
    user_id     TEXT    NOT NULL,
    fact        TEXT    NOT NULL,
    embedding   BLOB    NOT NULL,
    category    TEXT    NOT NULL CHECK (category IN ('fact', 'episode', 'semantic')),
    parent_id   TEXT    REFERENCES memories(id),
    edge_type   TEXT    CHECK (edge_type IN ('replace', 'extend')),
    deleted     INTEGER NOT NULL DEFAULT 0 CHECK (deleted IN (0, 1)),
    created_at  REAL    NOT NULL,
    CHECK ((parent_id IS NULL) = (edge_type IS NULL))
);

CREATE INDEX IF NOT EXISTS memories_user_deleted_idx ON memories(user_id, deleted);

-- a record is superseded at most once
CREATE UNIQUE INDEX IF NOT EXISTS memories_parent_idx
    ON memories(parent_id) WHERE parent_id IS NOT NULL;

CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    fact,
    content=memories,
    content_rowid=seq
);

CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, fact) VALUES (new.seq, new.fact);
END;

CREATE TRIGGER IF NOT EXISTS memories_immutable BEFORE UPDATE ON memories
WHEN NEW.seq IS NOT OLD.seq
    OR NEW.id IS NOT OLD.id
    OR NEW.user_id IS NOT OLD.user_id
    OR NEW.fact IS NOT OLD.fact
    OR NEW.embedding IS NOT OLD.embedding
    OR NEW.category IS NOT OLD.category
    OR NEW.parent_id IS NOT OLD.parent_id
    OR NEW.edge_type IS NOT OLD.edge_type
    OR NEW.created_at IS NOT OLD.created_at
    OR (OLD.deleted = 1 AND NEW.deleted = 0)
BEGIN
    SELECT RAISE(ABORT, 'memory records are immutable');
END;

CREATE TRIGGER IF NOT EXISTS memories_no_delete BEFORE DELETE ON memories BEGIN
    SELECT RAISE(ABORT, 'memory records are never removed');
END;
"""

_COLUMNS = "id, user_id, fact, embedding, category, parent_id, edge_type, deleted, created_at"


def pack_embedding(arr) -> bytes:
    """Serialize a vector to raw float32 bytes."""
    return np.asarray(arr, dtype=np.float32).tobytes()


def unpack_embedding(blob: bytes) -> np.ndarray:
    """Deserialize raw float32 bytes back to a vector."""
    return np.frombuffer(blob, dtype=np.float32)


def cosine_distance(a: bytes, b: bytes) -> float:
    """SQL function: 1 - cosine similarity of two packed embeddings.

    A zero vector is treated as orthogonal to everything (distance 1).
    """
    va = unpack_embedding(a).astype(np.float64)
    vb = unpack_embedding(b).astype(np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"embedding size mismatch: {va.size} vs {vb.size}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 1.0
    return 1.0 - float(np.dot(va, vb)) / denom


@contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


class MemoryStore:
    """Versioned memory records for many users in one SQLite database.

    All public operations are coroutines scoped by ``user_id``. Blocking
    SQLite work runs in a worker thread on its own connection, so separate
    turns never share transaction state. Atomicity comes from SQLite
    transactions; there are no in-process locks.
    """

    def __init__(self, db_path: str | Path, embedder: Embedder, *, busy_timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.embedder = embedder
        self.busy_timeout = busy_timeout
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"cannot create {self.db_path.parent}", detail=str(exc)) from exc
        self._bootstrap()
        log.debug("MemoryStore initialized at %s", self.db_path)

    @property
    def dimensions(self) -> int:
        return self.embedder.dimensions

    # ------------------------------------------------------------------
    # Connection mgmt
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open {self.db_path}", detail=str(exc)) from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.create_function("cosine_distance", 2, cosine_distance, deterministic=True)
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Yield a fresh connection; database-layer errors become StoreUnavailable."""
        conn = self._connect()
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            log.error("memory store error: %s", exc)
            raise StoreUnavailable(detail=str(exc)) from exc
        finally:
            conn.close()

    def _bootstrap(self) -> None:
        with self._session() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
            with _transaction(conn):
                row = conn.execute(
                    "SELECT value FROM store_meta WHERE key = 'dimensions'"
                ).fetchone()
                if row is None:
                    conn.executemany(
                        "INSERT INTO store_meta (key, value) VALUES (?, ?)",
                        [("dimensions", str(self.dimensions)), ("schema_version", str(SCHEMA_VERSION))],
                    )
                elif int(row["value"]) != self.dimensions:
                    raise ConfigError(
                        f"{self.db_path} holds {row['value']}-dimension embeddings, "
                        f"configured provider produces {self.dimensions}",
                        component="store",
                    )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add(self, user_id: str, content: str, category: Category | str = Category.FACT) -> MemoryRecord:
        """Embed ``content`` and store it as a new, parentless memory.

        Raises ``ValueError`` for empty content and ``EmbeddingFailure`` when
        no embedding could be produced. Nothing is written in either case.
        """
        content = (content or "").strip()
        if not content:
            raise ValueError("content must not be empty")
        category = Category(category)

        embedding = await self.embedder.embed_one(content)
        record = MemoryRecord(
            user_id=user_id,
            fact=content,
            embedding=embedding.tolist(),
            category=category,
        )
        await asyncio.to_thread(self._insert, record)
        log.info("added memory id=%s user=%s category=%s", record.id, user_id, category.value)
        return record

    async def update(
        self,
        user_id: str,
        memory_id: str,
        content: str,
        edge_type: EdgeType | str = EdgeType.REPLACE,
        category: Category | str = Category.FACT,
    ) -> MemoryRecord:
        """Supersede ``memory_id`` with a new record.

        The parent is marked deleted and the child inserted in one
        transaction. Any failure, including a missing embedding, raises
        ``UpdateFailed`` and leaves the store untouched.
        """
        content = (content or "").strip()
        if not content:
            raise UpdateFailed("content must not be empty")
        try:
            edge_type = EdgeType(edge_type)
            category = Category(category)
        except ValueError as exc:
            raise UpdateFailed(str(exc)) from exc

        try:
            embedding = await self.embedder.embed_one(content)
        except EmbeddingFailure as exc:
            raise UpdateFailed("failed to generate embeddings", detail=exc.detail) from exc

        child = MemoryRecord(
            user_id=user_id,
            fact=content,
            embedding=embedding.tolist(),
            category=category,
            parent_id=memory_id,
            edge_type=edge_type,
        )
        await asyncio.to_thread(self._supersede, user_id, memory_id, child)
        log.info(
            "updated memory %s -> %s (%s) user=%s",
            memory_id, child.id, edge_type.value, user_id,
        )
        return child

    async def delete(self, user_id: str, ids: Iterable[str]) -> DeleteResult:
        """Soft-delete the given ids that are active and owned by ``user_id``.

        Other ids are silently skipped. An empty result is a benign no-op,
        check ``DeleteResult.nothing_deleted``.
        """
        wanted = list(dict.fromkeys(i for i in ids if i))
        if not wanted:
            return DeleteResult()
        deleted = await asyncio.to_thread(self._soft_delete, user_id, wanted)
        if deleted:
            log.info("deleted %d memories user=%s", len(deleted), user_id)
        else:
            log.debug("delete matched nothing user=%s ids=%s", user_id, wanted)
        return DeleteResult(deleted_ids=deleted)

    def _insert(self, record: MemoryRecord) -> None:
        with self._session() as conn:
            try:
                with _transaction(conn):
                    self._insert_row(conn, record)
            except sqlite3.IntegrityError as exc:
                raise RemindError("memory insert rejected", component="store", detail=str(exc)) from exc

    def _supersede(self, user_id: str, memory_id: str, child: MemoryRecord) -> None:
        with self._session() as conn:
            try:
                with _transaction(conn):
                    cur = conn.execute(
                        "UPDATE memories SET deleted = 1 "
                        "WHERE id = ? AND user_id = ? AND deleted = 0",
                        (memory_id, user_id),
                    )
                    if cur.rowcount != 1:
                        raise UpdateFailed(self._not_updatable_reason(conn, user_id, memory_id))
                    self._insert_row(conn, child)
            except sqlite3.IntegrityError as exc:
                raise UpdateFailed("failed to insert child memory", detail=str(exc)) from exc

    def _soft_delete(self, user_id: str, ids: list[str]) -> list[str]:
        placeholders = ",".join("?" * len(ids))
        with self._session() as conn:
            with _transaction(conn):
                rows = conn.execute(
                    f"SELECT id FROM memories WHERE user_id = ? AND deleted = 0 "
                    f"AND id IN ({placeholders})",
                    (user_id, *ids),
                ).fetchall()
                found = {r["id"] for r in rows}
                if found:
                    conn.execute(
                        f"UPDATE memories SET deleted = 1 WHERE user_id = ? AND deleted = 0 "
                        f"AND id IN ({placeholders})",
                        (user_id, *ids),
                    )
        return [i for i in ids if i in found]

    @staticmethod
    def _not_updatable_reason(conn: sqlite3.Connection, user_id: str, memory_id: str) -> str:
        row = conn.execute(
            "SELECT user_id, deleted FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if row is None:
            return "parent memory not found"
        if row["user_id"] != user_id:
            return "parent memory not owned by user"
        return "parent memory already deleted"

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, record: MemoryRecord) -> None:
        conn.execute(
            f"INSERT INTO memories ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.user_id,
                record.fact,
                pack_embedding(record.embedding),
                record.category.value,
                record.parent_id,
                record.edge_type.value if record.edge_type else None,
                int(record.deleted),
                record.created_at.timestamp(),
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        """Fetch one record, deleted or not."""
        return await asyncio.to_thread(self._get, user_id, memory_id)

    async def list(self, user_id: str, limit: int = 20, *, include_deleted: bool = False) -> list[MemoryRecord]:
        """Most recent records first."""
        return await asyncio.to_thread(self._list, user_id, limit, include_deleted)

    async def lineage(self, user_id: str, memory_id: str) -> list[MemoryRecord]:
        """The record followed by every ancestor it superseded, nearest first."""
        return await asyncio.to_thread(self._lineage, user_id, memory_id)

    async def child_of(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        """The record that superseded ``memory_id``, if any."""
        return await asyncio.to_thread(self._child_of, user_id, memory_id)

    async def search_similar(
        self, user_id: str, query: np.ndarray, limit: int = 10
    ) -> list[tuple[MemoryRecord, float]]:
        """Active records ranked by cosine similarity to ``query``.

        Ties are broken by creation time, newest first.
        """
        return await asyncio.to_thread(self._search_similar, user_id, query, limit)

    async def search_keywords(self, user_id: str, query: str, limit: int = 10) -> list[MemoryRecord]:
        """Active records whose fact matches every word of ``query`` (FTS5)."""
        return await asyncio.to_thread(self._search_keywords, user_id, query, limit)

    def _get(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE id = ? AND user_id = ?",
                (memory_id, user_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def _list(self, user_id: str, limit: int, include_deleted: bool) -> list[MemoryRecord]:
        sql = f"SELECT {_COLUMNS} FROM memories WHERE user_id = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._session() as conn:
            rows = conn.execute(sql, (user_id, limit)).fetchall()
        return [self._row_to_record(r) for r in rows]

    def _lineage(self, user_id: str, memory_id: str) -> list[MemoryRecord]:
        cols = ", ".join(f"m.{c.strip()}" for c in _COLUMNS.split(","))
        with self._session() as conn:
            rows = conn.execute(
                "WITH RECURSIVE chain(id, depth) AS ("
                "  SELECT id, 0 FROM memories WHERE id = ? AND user_id = ?"
                "  UNION ALL"
                "  SELECT m.parent_id, chain.depth + 1 FROM memories m"
                "  JOIN chain ON m.id = chain.id WHERE m.parent_id IS NOT NULL"
                f") SELECT {cols} FROM chain JOIN memories m ON m.id = chain.id "
                "WHERE m.user_id = ? ORDER BY chain.depth",
                (memory_id, user_id, user_id),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def _child_of(self, user_id: str, memory_id: str) -> MemoryRecord | None:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE parent_id = ? AND user_id = ?",
                (memory_id, user_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def _search_similar(self, user_id: str, query: np.ndarray, limit: int) -> list[tuple[MemoryRecord, float]]:
        if np.asarray(query).size != self.dimensions:
            raise ConfigError(
                f"query has {np.asarray(query).size} dimensions, expected {self.dimensions}",
                component="store",
            )
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS}, 1 - cosine_distance(embedding, ?) AS similarity "
                "FROM memories WHERE user_id = ? AND deleted = 0 "
                "ORDER BY similarity DESC, created_at DESC, id DESC LIMIT ?",
                (pack_embedding(query), user_id, limit),
            ).fetchall()
        return [(self._row_to_record(r), float(r["similarity"])) for r in rows]

    def _search_keywords(self, user_id: str, query: str, limit: int) -> list[MemoryRecord]:
        words = re.findall(r"\w+", query)
        if not words:
            return []
        # quote every token so FTS5 operators in user text stay literal
        match = " ".join(f'"{w}"' for w in words)
        cols = ", ".join(f"m.{c.strip()}" for c in _COLUMNS.split(","))
        with self._session() as conn:
            try:
                rows = conn.execute(
                    f"SELECT {cols} FROM memories_fts fts "
                    "JOIN memories m ON m.seq = fts.rowid "
                    "WHERE memories_fts MATCH ? AND m.user_id = ? AND m.deleted = 0 "
                    "ORDER BY rank LIMIT ?",
                    (match, user_id, limit),
                ).fetchall()
            except sqlite3.OperationalError as exc:
                log.warning("FTS5 search failed: %s", exc)
                like = f"%{query.strip()}%"
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM memories "
                    "WHERE user_id = ? AND deleted = 0 AND fact LIKE ? "
                    "ORDER BY created_at DESC LIMIT ?",
                    (user_id, like, limit),
                ).fetchall()
        return [self._row_to_record(r) for r in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            fact=row["fact"],
            embedding=unpack_embedding(row["embedding"]).tolist(),
            category=row["category"],
            parent_id=row["parent_id"],
            edge_type=row["edge_type"],
            deleted=bool(row["deleted"]),
            created_at=datetime.fromtimestamp(row["created_at"], tz=timezone.utc),
        )
