"""Text analysis shared by indexing and query compilation.

The inverted index only works if a term is normalized the same way when a
note is written and when a query is compiled, so every tokenization in the
package goes through this module.
"""
from __future__ import annotations

import re
import unicodedata

WORD_RE = re.compile(r"\w+")
TAG_SPLIT_RE = re.compile(r"[:\s,]+")

def normalize(text: str) -> str:
    """Unicode-normalize and case-fold text."""
    return unicodedata.normalize("NFKC", text).casefold()

def tokenize(text: str) -> list[str]:
    """Split text into normalized word terms, in order of appearance."""
    return WORD_RE.findall(normalize(text))

def normalize_keyword(value: str) -> str:
    """Normalize a whole-value keyword (tag, status, category...)."""
    return " ".join(normalize(value).split())

def split_tags(value: str) -> list[str]:
    """Split an org/markdown tag list (`:a:b:`, `a b`, `a, b`) into tags."""
    return [t for t in TAG_SPLIT_RE.split(value.strip()) if t]
