"""noteindex: hybrid lexical + semantic search over outline notes.

Indexes org-mode and Markdown notes into an inverted index and a vector
index, and serves AQL queries (fielded terms, phrases, AND-lists, negation,
ranges) ranked by TF-IDF blended with embedding similarity.

Public API:
- IndexConfig
- NoteIndex
- Indexer
- Retriever
- parse
- compile_query
"""

from .config import IndexConfig
from .index import NoteIndex
from .indexer.indexer import Indexer
from .parsing import parse
from .query import compile_query
from .retrieval.retriever import Retriever

__all__ = ["IndexConfig", "NoteIndex", "Indexer", "Retriever", "parse", "compile_query"]
