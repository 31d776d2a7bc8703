from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

import numpy as np

from ..errors import StorageError
from ..models import Document
from .base import ChunkHit, DocumentRecord, EntryRecord, PostingHit

logger = logging.getLogger(__name__)

SQL_BATCH = 500
COMPARISON_OPS = (">", ">=", "<", "<=", "=")


class _JSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and date objects."""
    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_JSONEncoder, sort_keys=True)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
  doc_id TEXT PRIMARY KEY,
  parent_id TEXT,
  kind TEXT NOT NULL DEFAULT 'note',
  rel_path TEXT NOT NULL,
  title TEXT NOT NULL,
  body TEXT NOT NULL,
  tags_json TEXT NOT NULL,
  status TEXT,
  category TEXT,
  properties_json TEXT,
  created TEXT,
  modified TEXT,
  fingerprint TEXT NOT NULL,
  indexed_at TEXT DEFAULT (datetime('now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_note_path ON documents(rel_path) WHERE parent_id IS NULL;
CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent_id);

CREATE TABLE IF NOT EXISTS postings (
  field TEXT NOT NULL,
  term TEXT NOT NULL,
  doc_id TEXT NOT NULL,
  tf INTEGER NOT NULL,
  positions_json TEXT NOT NULL,
  PRIMARY KEY (field, term, doc_id)
);

CREATE INDEX IF NOT EXISTS idx_postings_doc ON postings(doc_id);

CREATE TABLE IF NOT EXISTS field_values (
  doc_id TEXT NOT NULL,
  field TEXT NOT NULL,
  value REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_field_values_field ON field_values(field, value);
CREATE INDEX IF NOT EXISTS idx_field_values_doc ON field_values(doc_id);

CREATE TABLE IF NOT EXISTS chunks (
  chunk_id TEXT PRIMARY KEY,
  doc_id TEXT NOT NULL,
  ordinal INTEGER NOT NULL,
  start_offset INTEGER NOT NULL,
  end_offset INTEGER NOT NULL,
  text TEXT NOT NULL,
  text_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_doc ON chunks(doc_id);

CREATE TABLE IF NOT EXISTS embeddings (
  chunk_id TEXT PRIMARY KEY,
  doc_id TEXT NOT NULL,
  model_id TEXT NOT NULL,
  dims INTEGER NOT NULL,
  vector BLOB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_embeddings_doc ON embeddings(doc_id);

CREATE TABLE IF NOT EXISTS index_meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""

def _vec_to_blob(vec: np.ndarray) -> bytes:
    return np.asarray(vec, dtype=np.float32).ravel().tobytes()

def _blob_to_vec(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)

def _batches(items: Sequence[str], size: int = SQL_BATCH) -> Iterator[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]

class SqliteStore:
    """SQLite-backed inverted index, typed field values and vector store.

    Each thread gets its own connection in WAL mode, so readers proceed
    concurrently with a writer and a read transaction keeps seeing the state
    it started with. Vector search is brute-force cosine similarity.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Thread-local storage for per-thread connections
        self._local = threading.local()
        # Track all connections for cleanup
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a thread-local SQLite connection in autocommit mode.

        Transactions are opened explicitly by `snapshot()` and the write
        methods.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=30000")
            self._local.conn = conn
            self._local.depth = 0
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    def close(self) -> None:
        """Close all thread-local connections."""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()

    def release_thread_conn(self) -> None:
        """Close the calling thread's connection.

        Worker threads call this when a job finishes, so short-lived pools
        don't leave connections behind.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None or getattr(self._local, "depth", 0):
            return
        self._local.conn = None
        with self._conn_lock:
            self._connections = [c for c in self._connections if c is not conn]
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug(f"Error closing connection: {e}")

    def init(self) -> None:
        try:
            self._get_conn().executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize index at {self.db_path}: {e}") from e

    # -- transactions

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        """Group reads into one read transaction.

        Nested snapshots on the same thread join the outer one.
        """
        conn = self._get_conn()
        if self._local.depth:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open read transaction: {e}") from e
        self._local.depth = 1
        try:
            yield
        except sqlite3.Error as e:
            raise StorageError(f"Index read failed: {e}") from e
        finally:
            self._local.depth = 0
            if conn.in_transaction:
                conn.execute("COMMIT")

    def replace_document(self, record: DocumentRecord) -> None:
        """Atomically replace every row owned by a document."""
        doc = record.document
        vectors = np.asarray(record.vectors, dtype=np.float32)
        n_vectors = vectors.shape[0] if vectors.ndim == 2 else 0
        if len(record.chunks) != n_vectors:
            raise StorageError(f"{len(record.chunks)} chunks but {n_vectors} vectors", doc.doc_id)
        dims = int(vectors.shape[1]) if n_vectors else 0

        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if dims:
                    self._check_dims(conn, dims, record.model_id, doc.doc_id)
                self._delete_rows(conn, doc.doc_id)
                conn.execute(
                    """
                    INSERT INTO documents(doc_id, parent_id, kind, rel_path, title, body, tags_json, status, category,
                                          properties_json, created, modified, fingerprint, indexed_at)
                    VALUES (?, NULL, 'note', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                    """,
                    (
                        doc.doc_id,
                        doc.rel_path,
                        doc.title,
                        doc.body,
                        _json_dumps(sorted(doc.tags)),
                        doc.status.value if doc.status else None,
                        doc.category,
                        _json_dumps(doc.properties),
                        doc.created.isoformat() if doc.created else None,
                        doc.modified.isoformat() if doc.modified else None,
                        doc.fingerprint,
                    ),
                )
                conn.executemany(
                    "INSERT INTO postings(field, term, doc_id, tf, positions_json) VALUES (?, ?, ?, ?, ?)",
                    [(p.field, p.term, doc.doc_id, p.tf, json.dumps(list(p.positions))) for p in record.postings],
                )
                conn.executemany(
                    "INSERT INTO field_values(doc_id, field, value) VALUES (?, ?, ?)",
                    [(doc.doc_id, f, float(v)) for f, v in record.field_values],
                )
                conn.executemany(
                    """
                    INSERT INTO chunks(chunk_id, doc_id, ordinal, start_offset, end_offset, text, text_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [(c.chunk_id, doc.doc_id, c.ordinal, c.start, c.end, c.text, c.text_hash) for c in record.chunks],
                )
                conn.executemany(
                    "INSERT INTO embeddings(chunk_id, doc_id, model_id, dims, vector) VALUES (?, ?, ?, ?, ?)",
                    [
                        (c.chunk_id, doc.doc_id, record.model_id, dims, _vec_to_blob(v))
                        for c, v in zip(record.chunks, vectors)
                    ],
                )
                for entry in record.entries:
                    self._insert_entry(conn, doc, entry)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {doc.rel_path}: {e}", doc.doc_id) from e

    def delete_document(self, doc_id: str) -> bool:
        """Remove a document and everything it owns. Returns False if absent."""
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existed = self._delete_rows(conn, doc_id)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete document: {e}", doc_id) from e
        return existed

    def _insert_entry(self, conn: sqlite3.Connection, doc: Document, entry: EntryRecord) -> None:
        conn.execute(
            """
            INSERT INTO documents(doc_id, parent_id, kind, rel_path, title, body, tags_json, status, category,
                                  properties_json, fingerprint, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, '{}', ?, datetime('now'))
            """,
            (
                entry.entry_id,
                doc.doc_id,
                entry.kind,
                doc.rel_path,
                entry.title,
                entry.body,
                _json_dumps(sorted(entry.tags)),
                entry.status,
                doc.category,
                doc.fingerprint,
            ),
        )
        conn.executemany(
            "INSERT INTO postings(field, term, doc_id, tf, positions_json) VALUES (?, ?, ?, ?, ?)",
            [(p.field, p.term, entry.entry_id, p.tf, json.dumps(list(p.positions))) for p in entry.postings],
        )
        conn.executemany(
            "INSERT INTO field_values(doc_id, field, value) VALUES (?, ?, ?)",
            [(entry.entry_id, f, float(v)) for f, v in entry.field_values],
        )

    def _delete_rows(self, conn: sqlite3.Connection, doc_id: str) -> bool:
        """Delete a document and its entries. Returns True if the document existed."""
        ids = [doc_id] + [r[0] for r in conn.execute("SELECT doc_id FROM documents WHERE parent_id = ?", (doc_id,))]
        cur = conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,))
        conn.execute("DELETE FROM documents WHERE parent_id = ?", (doc_id,))
        for table in ("postings", "field_values", "chunks", "embeddings"):
            conn.executemany(f"DELETE FROM {table} WHERE doc_id = ?", [(i,) for i in ids])
        return cur.rowcount > 0

    def _check_dims(self, conn: sqlite3.Connection, dims: int, model_id: str, doc_id: str) -> None:
        """Pin the vector dimensionality on first write; reject anything else after."""
        rows = dict(conn.execute("SELECT key, value FROM index_meta").fetchall())
        stored = rows.get("dims")
        if stored is None:
            conn.execute("INSERT INTO index_meta(key, value) VALUES ('dims', ?)", (str(dims),))
            conn.execute("INSERT OR REPLACE INTO index_meta(key, value) VALUES ('model_id', ?)", (model_id,))
            return
        if int(stored) != dims:
            raise StorageError(
                f"Embedding dims {dims} do not match index dims {stored}; rebuild the index to change models",
                doc_id,
            )
        if model_id and rows.get("model_id") not in (None, model_id):
            logger.warning(f"Embedding model changed from {rows.get('model_id')} to {model_id} with equal dims")
            conn.execute("UPDATE index_meta SET value = ? WHERE key = 'model_id'", (model_id,))

    # -- reads

    def _read(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Index read failed: {e}") from e

    def get_fingerprint(self, doc_id: str) -> str | None:
        rows = self._read("SELECT fingerprint FROM documents WHERE doc_id = ? AND parent_id IS NULL", (doc_id,))
        return rows[0]["fingerprint"] if rows else None

    def get_fingerprints(self) -> dict[str, tuple[str, str]]:
        """Map doc_id -> (rel_path, fingerprint) for every indexed document."""
        rows = self._read("SELECT doc_id, rel_path, fingerprint FROM documents WHERE parent_id IS NULL")
        return {r["doc_id"]: (r["rel_path"], r["fingerprint"]) for r in rows}

    def document_count(self) -> int:
        """Number of indexed notes."""
        return int(self._read("SELECT COUNT(*) AS n FROM documents WHERE parent_id IS NULL")[0]["n"])

    def all_doc_ids(self) -> set[str]:
        return {r["doc_id"] for r in self._read("SELECT doc_id FROM documents WHERE parent_id IS NULL")}

    def entry_count(self) -> int:
        """Number of searchable entries: notes plus their tasks, meetings and headings."""
        return int(self._read("SELECT COUNT(*) AS n FROM documents")[0]["n"])

    def all_entry_ids(self) -> set[str]:
        return {r["doc_id"] for r in self._read("SELECT doc_id FROM documents")}

    def postings(self, field: str, term: str) -> list[PostingHit]:
        rows = self._read(
            "SELECT doc_id, tf, positions_json FROM postings WHERE field = ? AND term = ?",
            (field, term),
        )
        return [PostingHit(r["doc_id"], int(r["tf"]), tuple(json.loads(r["positions_json"]))) for r in rows]

    def filter_values(self, field: str, op: str, bound: float) -> set[str]:
        if op not in COMPARISON_OPS:
            raise ValueError(f"Unsupported comparison operator: {op!r}")
        rows = self._read(f"SELECT DISTINCT doc_id FROM field_values WHERE field = ? AND value {op} ?", (field, bound))
        return {r["doc_id"] for r in rows}

    def chunk_vectors(self, doc_ids: Iterable[str]) -> dict[str, np.ndarray]:
        """Stack each entry's chunk vectors into a (n_chunks, dims) matrix.

        Entries inside a note share the note's chunks.
        """
        by_doc: dict[str, list[np.ndarray]] = {}
        ids = sorted(set(doc_ids))
        for batch in _batches(ids):
            placeholders = ",".join("?" * len(batch))
            rows = self._read(
                f"""
                SELECT d.doc_id AS doc_id, e.vector AS vector
                FROM documents d JOIN embeddings e ON e.doc_id = COALESCE(d.parent_id, d.doc_id)
                WHERE d.doc_id IN ({placeholders})
                ORDER BY e.rowid
                """,
                batch,
            )
            for r in rows:
                by_doc.setdefault(r["doc_id"], []).append(_blob_to_vec(r["vector"]))
        return {doc_id: np.vstack(vecs) for doc_id, vecs in by_doc.items()}

    def nearest_chunks(self, query_vec: np.ndarray, k: int) -> list[ChunkHit]:
        """Brute-force cosine k-NN over all chunk vectors."""
        rows = self._read("SELECT chunk_id, doc_id, vector FROM embeddings")
        if not rows or k <= 0:
            return []
        q = np.asarray(query_vec, dtype=np.float32).ravel()
        mat = np.vstack([_blob_to_vec(r["vector"]) for r in rows])
        if mat.shape[1] != q.shape[0]:
            raise StorageError(f"Query vector has {q.shape[0]} dims, index has {mat.shape[1]}")
        denom = np.linalg.norm(mat, axis=1) * (np.linalg.norm(q) or 1.0)
        sims = (mat @ q) / np.where(denom == 0, 1.0, denom)
        order = sorted(range(len(rows)), key=lambda i: (-float(sims[i]), rows[i]["chunk_id"]))[:k]
        return [ChunkHit(rows[i]["chunk_id"], rows[i]["doc_id"], float(sims[i])) for i in order]

    def get_documents(self, doc_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        ids = list(dict.fromkeys(doc_ids))
        for batch in _batches(ids):
            placeholders = ",".join("?" * len(batch))
            rows = self._read(
                f"""
                SELECT doc_id, parent_id, kind, rel_path, title, body, tags_json, status, category,
                       properties_json, created, modified, fingerprint
                FROM documents WHERE doc_id IN ({placeholders})
                """,
                batch,
            )
            for r in rows:
                d = dict(r)
                d["tags"] = json.loads(d.pop("tags_json"))
                d["properties"] = json.loads(d.pop("properties_json") or "{}")
                out[r["doc_id"]] = d
        return out

    def get_chunks(self, doc_id: str) -> list[dict[str, Any]]:
        rows = self._read(
            "SELECT chunk_id, ordinal, start_offset, end_offset, text, text_hash FROM chunks "
            "WHERE doc_id = ? ORDER BY ordinal",
            (doc_id,),
        )
        return [dict(r) for r in rows]

    def status(self) -> dict[str, Any]:
        with self.snapshot():
            counts = {
                table: int(self._read(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"])
                for table in ("chunks", "embeddings", "postings")
            }
            counts["documents"] = self.document_count()
            counts["entries"] = self.entry_count() - counts["documents"]
            meta = {r["key"]: r["value"] for r in self._read("SELECT key, value FROM index_meta")}
        return {
            "db_path": str(self.db_path),
            "indexed_documents": counts["documents"],
            "indexed_entries": counts["entries"],
            "indexed_chunks": counts["chunks"],
            "embeddings": counts["embeddings"],
            "postings": counts["postings"],
            "model_id": meta.get("model_id"),
            "dims": int(meta["dims"]) if "dims" in meta else None,
        }
