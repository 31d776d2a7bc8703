from .base import ChunkHit, DocumentRecord, EntryRecord, Posting, PostingHit, Store
from .sqlite_store import SqliteStore

__all__ = ["Store", "SqliteStore", "DocumentRecord", "EntryRecord", "Posting", "PostingHit", "ChunkHit"]
