"""Typed AST produced by the AQL compiler.

Nodes are frozen dataclasses: two compilations of the same query string
produce equal (and equally hashed) trees. Values are stored already
normalized by `noteindex.analysis`, so the engine never re-analyzes them.
"""
from __future__ import annotations

import operator
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Union

class RangeOp(str, Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="

    def test(self, stored: float, bound: float) -> bool:
        return _OPS[self](stored, bound)

_OPS = {
    RangeOp.GT: operator.gt,
    RangeOp.GTE: operator.ge,
    RangeOp.LT: operator.lt,
    RangeOp.LTE: operator.le,
}

@dataclass(frozen=True)
class Term:
    """A single normalized term. `field=None` means the default fields."""
    field: Optional[str]
    value: str

@dataclass(frozen=True)
class Phrase:
    """Consecutive normalized terms, space separated."""
    field: Optional[str]
    text: str

    @property
    def terms(self) -> tuple[str, ...]:
        return tuple(self.text.split(" "))

@dataclass(frozen=True)
class MultiValue:
    """`field:a,b,c`: every value must be present in the field (AND)."""
    field: str
    values: tuple[str, ...]

@dataclass(frozen=True)
class Negation:
    clause: "Clause"

@dataclass(frozen=True)
class Range:
    field: str
    op: RangeOp
    value: str
    bound: float

@dataclass(frozen=True)
class Or:
    """`a b OR c`: any branch matches. Each branch is an AND of clauses."""
    branches: tuple[tuple["Clause", ...], ...]

Clause = Union[Term, Phrase, MultiValue, Negation, Range, Or]

def positive_leaves(clauses: Iterable[Clause]) -> Iterator[Clause]:
    """Non-negated clauses, descending into OR branches."""
    for clause in clauses:
        if isinstance(clause, Or):
            for branch in clause.branches:
                yield from positive_leaves(branch)
        elif not isinstance(clause, Negation):
            yield clause

def fields_of(clause: Clause) -> Iterator[Optional[str]]:
    """Every field name a clause refers to, None for default-field clauses."""
    if isinstance(clause, Or):
        for branch in clause.branches:
            for c in branch:
                yield from fields_of(c)
    elif isinstance(clause, Negation):
        yield from fields_of(clause.clause)
    else:
        yield clause.field

@dataclass(frozen=True)
class Query:
    """Top-level clauses, combined with implicit AND."""
    clauses: tuple[Clause, ...] = ()

    def __iter__(self) -> Iterator[Clause]:
        return iter(self.clauses)

    def __len__(self) -> int:
        return len(self.clauses)

    @property
    def positive(self) -> list[Clause]:
        return [c for c in self.clauses if not isinstance(c, Negation)]

    @property
    def negative(self) -> list[Negation]:
        return [c for c in self.clauses if isinstance(c, Negation)]

    def mentions(self, field: str) -> bool:
        return any(field in fields_of(c) for c in self.clauses)

    def default_text(self) -> str:
        """The non-negated unfielded terms and phrases, used for similarity."""
        parts: list[str] = []
        for clause in positive_leaves(self.clauses):
            if isinstance(clause, Term) and clause.field is None:
                parts.append(clause.value)
            elif isinstance(clause, Phrase) and clause.field is None:
                parts.append(clause.text)
        return " ".join(parts)
