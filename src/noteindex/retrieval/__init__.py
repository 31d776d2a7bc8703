from .engine import SearchEngine, SearchOptions, make_snippet
from .retriever import Retriever
from .scoring import idf, max_cosine, phrase_frequency, tf_weight, tfidf

__all__ = [
    "SearchEngine",
    "SearchOptions",
    "Retriever",
    "make_snippet",
    "idf",
    "tf_weight",
    "tfidf",
    "phrase_frequency",
    "max_cosine",
]
