"""AQL compiler: query string + field schema -> typed Query AST.

Grammar (clauses are whitespace separated, combined with AND):

    query    := and ("OR" and)*                 any branch matches
    and      := clause ("AND"? clause)*
    clause   := "-" clause                      negation of the whole clause
              | "NOT" clause
              | '"' text '"'                    default-field phrase
              | FIELD ":" values                field term / phrase / AND-list
              | FIELD ":"? OP value             range, OP in > >= < <=
              | word                            default-field term
    values   := value ("," value)*              comma list means AND
    value    := '"' text '"' | bare

Operators are upper case only; a quoted "or" searches for the word. AND
binds tighter than OR. A bare URL (`https://...`) is a default-field phrase,
not a field named `https`.

Compilation is pure: the same string and schema always give the same AST,
and every schema violation is raised before anything touches an index.
"""
from __future__ import annotations

import re

from ..analysis import normalize_keyword, tokenize
from ..errors import QuerySyntaxError, RangeTypeError, UnknownFieldError
from .ast import Clause, MultiValue, Negation, Or, Phrase, Query, Range, RangeOp, Term
from .schema import FieldSchema, FieldSpec, FieldType, canonical_value, parse_typed_value

FIELD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
RANGE_OPS = (">=", "<=", ">", "<")
OPERATORS = ("OR", "AND", "NOT")

def compile_query(query: str, schema: FieldSchema | None = None) -> Query:
    """Compile an AQL string. Raises a QueryError subclass on bad input."""
    return _Compiler(query, schema or FieldSchema.default()).compile()

class _Compiler:
    def __init__(self, text: str, schema: FieldSchema) -> None:
        self.text = text
        self.schema = schema
        self.pos = 0

    def compile(self) -> Query:
        branches: list[tuple[Clause, ...]] = []
        current: list[Clause] = []
        pending: tuple[str, int] | None = None
        while True:
            self._skip_ws()
            if self._at_end():
                break
            start = self.pos
            op = self._operator()
            if op in ("OR", "AND"):
                if not current or pending is not None:
                    raise self._error(start, f"{op} must follow a clause")
                self.pos += len(op)
                pending = (op, start)
                if op == "OR":
                    branches.append(tuple(current))
                    current = []
                continue
            current.append(self._clause())
            pending = None
        if pending is not None:
            raise self._error(pending[1], f"{pending[0]} must be followed by a clause")
        if branches:
            return Query((Or(tuple(branches) + (tuple(current),)),))
        return Query(tuple(current))

    # -- scanning helpers

    def _at_end(self) -> bool:
        return self.pos >= len(self.text)

    def _at_boundary(self) -> bool:
        return self._at_end() or self.text[self.pos].isspace()

    def _skip_ws(self) -> None:
        while not self._at_end() and self.text[self.pos].isspace():
            self.pos += 1

    def _operator(self) -> str | None:
        """The upper-case operator word at the cursor, if any. Doesn't consume it."""
        for op in OPERATORS:
            end = self.pos + len(op)
            if self.text.startswith(op, self.pos) and (end >= len(self.text) or self.text[end].isspace()):
                return op
        return None

    def _error(self, position: int, reason: str) -> QuerySyntaxError:
        return QuerySyntaxError(self.text, position, reason)

    def _read_until(self, stops: str = "") -> str:
        start = self.pos
        while not self._at_boundary() and self.text[self.pos] not in stops:
            self.pos += 1
        return self.text[start:self.pos]

    def _read_quoted(self) -> str:
        start = self.pos
        close = self.text.find('"', start + 1)
        if close < 0:
            raise self._error(start, "unterminated quoted phrase")
        self.pos = close + 1
        return self.text[start + 1:close]

    # -- clauses

    def _clause(self) -> Clause:
        start = self.pos
        op = self._operator()
        if op in ("OR", "AND"):
            raise self._error(start, f"{op} must be between clauses")
        if op == "NOT":
            self.pos += len(op)
            self._skip_ws()
            if self._at_end():
                raise self._error(start, "negation must be followed by a clause")
            return Negation(self._clause())
        ch = self.text[start]
        if ch == "-":
            self.pos += 1
            if self._at_boundary():
                raise self._error(start, "negation must be followed by a clause")
            return Negation(self._clause())
        if ch == '"':
            return self._default_value(self._read_quoted(), start, quoted=True)

        m = FIELD_RE.match(self.text, start)
        if m:
            nxt = self.text[m.end():m.end() + 1]
            if nxt == ":" and self.text.startswith("//", m.end() + 1):
                return self._default_value(self._read_until(), start, quoted=False)
            if nxt == ":":
                spec = self._field(m.group(0), start)
                self.pos = m.end() + 1
                if self.text[self.pos:self.pos + 1] in ("<", ">"):
                    return self._range(spec)
                return self._fielded(spec)
            if nxt in ("<", ">"):
                spec = self._field(m.group(0), start)
                self.pos = m.end()
                return self._range(spec)
        return self._default_value(self._read_until(), start, quoted=False)

    def _field(self, name: str, position: int) -> FieldSpec:
        spec = self.schema.get(name)
        if spec is None:
            raise UnknownFieldError(name, self.text, position)
        return spec

    def _default_value(self, raw: str, position: int, quoted: bool) -> Clause:
        tokens = tokenize(raw)
        if not tokens:
            reason = "empty phrase" if quoted else "term has no searchable characters"
            raise self._error(position, reason)
        if len(tokens) == 1 and not quoted:
            return Term(None, tokens[0])
        return Phrase(None, " ".join(tokens))

    def _fielded(self, spec: FieldSpec) -> Clause:
        items: list[tuple[str, bool, int]] = []
        while True:
            item_pos = self.pos
            if self._at_boundary():
                reason = "missing value after ','" if items else f"missing value for field {spec.name!r}"
                raise self._error(item_pos, reason)
            if self.text[self.pos] == '"':
                items.append((self._read_quoted(), True, item_pos))
            else:
                raw = self._read_until(",")
                if not raw:
                    raise self._error(item_pos, "empty value in list")
                items.append((raw, False, item_pos))
            if self.text[self.pos:self.pos + 1] == ",":
                self.pos += 1
                continue
            if not self._at_boundary():
                raise self._error(self.pos, "unexpected character after value")
            break

        values = [self._field_value(spec, raw, pos) for raw, _, pos in items]
        if len(values) > 1:
            return MultiValue(spec.name, tuple(values))
        raw, quoted, _ = items[0]
        value = values[0]
        if spec.type == FieldType.TEXT and (quoted or " " in value):
            return Phrase(spec.name, value)
        return Term(spec.name, value)

    def _field_value(self, spec: FieldSpec, raw: str, position: int) -> str:
        if spec.type == FieldType.TEXT:
            tokens = tokenize(raw)
            if not tokens:
                raise self._error(position, "value has no searchable characters")
            return " ".join(tokens)
        if spec.type == FieldType.KEYWORD:
            value = normalize_keyword(raw)
            if not value:
                raise self._error(position, "empty value")
            return value
        try:
            return canonical_value(spec, raw)
        except ValueError as e:
            raise RangeTypeError(spec.name, raw, f"expected {spec.type.value}: {e}", self.text, position) from e

    def _range(self, spec: FieldSpec) -> Range:
        op_pos = self.pos
        op = next(o for o in RANGE_OPS if self.text.startswith(o, self.pos))
        self.pos += len(op)
        value_pos = self.pos
        raw = self._read_until()
        if not raw:
            raise self._error(value_pos if value_pos < len(self.text) else op_pos, "missing value for range")
        if not spec.rangeable:
            raise RangeTypeError(
                spec.name, raw, f"field of type {spec.type.value} does not support ranges", self.text, value_pos
            )
        try:
            bound = parse_typed_value(spec, raw)
            value = canonical_value(spec, raw)
        except ValueError as e:
            raise RangeTypeError(spec.name, raw, f"expected {spec.type.value}: {e}", self.text, value_pos) from e
        return Range(spec.name, RangeOp(op), value, bound)
