from __future__ import annotations

from dataclasses import dataclass, field

from .base import Chunked, Tokenizer
from .tokenizers import WordTokenizer

@dataclass
class TokenChunker:
    """Split text into windows of at most `max_tokens` tokens.

    Consecutive windows share `overlap_tokens` tokens for context
    preservation. Each chunk is an exact slice of the input text, so its
    span can be mapped back to the document body.
    """
    max_tokens: int = 1280
    overlap_tokens: int = 64
    tokenizer: Tokenizer = field(default_factory=WordTokenizer)

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError(f"Invalid max_tokens: {self.max_tokens}. Must be > 0.")
        if self.overlap_tokens < 0 or self.overlap_tokens >= self.max_tokens:
            raise ValueError(
                f"Invalid overlap_tokens: {self.overlap_tokens}. Must be >= 0 and < max_tokens ({self.max_tokens})."
            )

    def chunk(self, text: str) -> list[Chunked]:
        spans = self.tokenizer.spans(text)
        if not spans:
            return []
        step = self.max_tokens - self.overlap_tokens
        chunks: list[Chunked] = []
        first = 0
        while True:
            last = min(first + self.max_tokens, len(spans)) - 1
            start, end = spans[first][0], spans[last][1]
            chunks.append(Chunked(ordinal=len(chunks), start=start, end=end, text=text[start:end]))
            if last == len(spans) - 1:
                break
            first += step
        return chunks
