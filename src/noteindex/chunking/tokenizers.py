from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .base import Tokenizer

WHITESPACE_TOKEN_RE = re.compile(r"\S+")

@dataclass
class WordTokenizer:
    """Whitespace-delimited tokens. No model vocabulary required."""
    name: str = "words"

    def spans(self, text: str) -> list[tuple[int, int]]:
        return [m.span() for m in WHITESPACE_TOKEN_RE.finditer(text)]

@dataclass
class TiktokenTokenizer:
    """BPE tokens from a tiktoken encoding (e.g. `cl100k_base`)."""
    name: str = "cl100k_base"
    _enc: Any = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        import tiktoken  # type: ignore
        self._enc = tiktoken.get_encoding(self.name)

    def spans(self, text: str) -> list[tuple[int, int]]:
        tokens = self._enc.encode(text, disallowed_special=())
        if not tokens:
            return []
        decoded, offsets = self._enc.decode_with_offsets(tokens)
        if decoded != text:
            # Lossy decode; clamp offsets into the input text.
            offsets = [min(o, len(text)) for o in offsets]
        ends = offsets[1:] + [len(text)]
        spans: list[tuple[int, int]] = []
        for start, end in zip(offsets, ends):
            # Multi-token characters share an offset; merge them into one span.
            if spans and start <= spans[-1][0]:
                spans[-1] = (spans[-1][0], max(spans[-1][1], end))
            elif end > start:
                spans.append((start, end))
        return spans

def get_tokenizer(name: str) -> Tokenizer:
    if name == "words":
        return WordTokenizer()
    return TiktokenTokenizer(name)
