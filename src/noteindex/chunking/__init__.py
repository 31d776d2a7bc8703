from .base import Chunked, Chunker, Tokenizer
from .token_chunker import TokenChunker
from .tokenizers import TiktokenTokenizer, WordTokenizer, get_tokenizer

__all__ = ["Chunked", "Chunker", "Tokenizer", "TokenChunker", "TiktokenTokenizer", "WordTokenizer", "get_tokenizer"]
