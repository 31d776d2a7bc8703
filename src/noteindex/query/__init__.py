from .ast import MultiValue, Negation, Or, Phrase, Query, Range, RangeOp, Term
from .compiler import compile_query
from .schema import FieldSchema, FieldSpec, FieldType

__all__ = [
    "compile_query",
    "Query",
    "Term",
    "Phrase",
    "MultiValue",
    "Negation",
    "Or",
    "Range",
    "RangeOp",
    "FieldSchema",
    "FieldSpec",
    "FieldType",
]
