from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

@dataclass(frozen=True)
class Chunked:
    """A bounded span of a document body, `text == body[start:end]`."""
    ordinal: int
    start: int
    end: int
    text: str

class Tokenizer(Protocol):
    name: str

    def spans(self, text: str) -> list[tuple[int, int]]:
        """Character spans of the tokens of `text`, in order."""
        ...

class Chunker(Protocol):
    def chunk(self, text: str) -> list[Chunked]:
        ...
