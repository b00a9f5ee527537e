"""
Lookup expressions and where clauses of alert rules.

A lookup names the value a rule checks. It is either a bare field of the
sample table (``idle``) or a windowed aggregate::

    avg pct 10m of used over total
    max abs 5m of rx_errs,tx_errs

``pct`` divides the summed aggregates of the ``of`` fields by the summed
aggregates of the ``over`` fields and multiplies by 100; ``abs`` only sums
the ``of`` aggregates.

A where clause filters the rows a rule looks at::

    mount_point = '/' AND NOT disk_name = 'tmpfs'
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from hostwatch.errors import ValidationError
from hostwatch.utils.helpers import parse_interval

# Statements never allowed in a where clause
DISALLOWED_STATEMENTS = (
    'DELETE', 'UPDATE', 'INSERT', 'ALTER', 'DROP', 'TRUNCATE',
    'GRANT', 'REVOKE', 'BEGIN', 'COMMIT', 'SAVEPOINT', 'ROLLBACK',
)

AGGREGATES: Dict[str, Callable[[Sequence[float]], float]] = {
    'avg': lambda values: sum(values) / len(values),
    'min': min,
    'max': max,
    'sum': sum,
}

_FIELD_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_LOOKUP_RE = re.compile(
    r'^\s*(?P<agg>\w+)\s+(?P<mode>\w+)\s+(?P<interval>\d+\s*[A-Za-z]+)\s+of\s+'
    r'(?P<of>[\w\s,]+?)(?:\s+over\s+(?P<over>[\w\s,]+?))?\s*$',
    re.IGNORECASE
)


@dataclass(frozen=True)
class Lookup:
    """Compiled lookup expression"""
    expression: str
    fields: Tuple[str, ...]
    aggregate: Optional[str] = None
    mode: str = 'abs'
    window_seconds: int = 0
    divisor_fields: Tuple[str, ...] = ()

    @property
    def is_windowed(self) -> bool:
        return self.aggregate is not None

    def compute(self, rows: Sequence[Mapping[str, Any]]) -> float:
        """
        Compute the lookup value over rows.

        Bare lookups read the first row; windowed lookups aggregate every row.

        Raises:
            KeyError: If a row lacks a field
            TypeError, ValueError: If a field is not numeric
            ZeroDivisionError: If a pct divisor is zero
        """
        if not rows:
            raise ValueError("No rows to compute lookup on")

        if not self.is_windowed:
            return _numeric(rows[0][self.fields[0]])

        agg = AGGREGATES[self.aggregate]
        numerator = sum(agg([_numeric(row[f]) for row in rows]) for f in self.fields)
        if self.mode == 'abs':
            return numerator

        divisor = sum(agg([_numeric(row[f]) for row in rows]) for f in self.divisor_fields)
        if divisor == 0:
            raise ZeroDivisionError(f"Divisor of '{self.expression}' is zero")
        return numerator / divisor * 100


def _numeric(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Not a numeric value: {value!r}")
    return float(value)


def _split_fields(text: str) -> Tuple[str, ...]:
    names = tuple(name.strip() for name in text.split(',') if name.strip())
    for name in names:
        if not _FIELD_RE.match(name):
            raise ValidationError(f"Invalid field name in lookup: {name!r}")
    return names


def parse_lookup(expression: str) -> Lookup:
    """
    Compile a lookup expression.

    Raises:
        ValidationError: If the expression is malformed
    """
    if not isinstance(expression, str):
        raise ValidationError(f"Lookup must be a string, got {type(expression).__name__}")
    if not expression.strip():
        raise ValidationError("Lookup must not be empty")

    text = expression.strip()
    if _FIELD_RE.match(text):
        return Lookup(expression=text, fields=(text,))

    match = _LOOKUP_RE.match(text)
    if not match:
        raise ValidationError(f"Invalid lookup: {expression!r}")

    aggregate = match.group('agg').lower()
    if aggregate not in AGGREGATES:
        raise ValidationError(f"Invalid aggregate {aggregate!r}. Must be one of {sorted(AGGREGATES)}")

    mode = match.group('mode').lower()
    if mode not in ('abs', 'pct'):
        raise ValidationError(f"Invalid lookup mode {mode!r}. Must be 'abs' or 'pct'")

    try:
        window_seconds = parse_interval(match.group('interval'))
    except ValueError as e:
        raise ValidationError(str(e)) from e

    of_fields = _split_fields(match.group('of'))
    over = match.group('over')
    divisor_fields = _split_fields(over) if over else ()

    if not of_fields:
        raise ValidationError(f"Lookup has no fields: {expression!r}")
    if mode == 'pct' and not divisor_fields:
        raise ValidationError(f"pct lookup requires 'over' fields: {expression!r}")
    if mode == 'abs' and divisor_fields:
        raise ValidationError(f"abs lookup cannot have 'over' fields: {expression!r}")

    return Lookup(
        expression=text,
        fields=of_fields,
        aggregate=aggregate,
        mode=mode,
        window_seconds=window_seconds,
        divisor_fields=divisor_fields,
    )


# -- where clauses ---------------------------------------------------------

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | '(?P<squote>[^']*)'
      | "(?P<dquote>[^"]*)"
      | (?P<op><=|>=|<>|!=|==|=|<|>)
      | (?P<paren>[()])
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    )
""", re.VERBOSE)

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '=': lambda a, b: a == b,
    '==': lambda a, b: a == b,
    '!=': lambda a, b: a != b,
    '<>': lambda a, b: a != b,
    '<': lambda a, b: a < b,
    '<=': lambda a, b: a <= b,
    '>': lambda a, b: a > b,
    '>=': lambda a, b: a >= b,
}

Predicate = Callable[[Mapping[str, Any]], bool]


def _tokenize(text: str) -> List[Tuple[str, Any]]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ValidationError(f"Unexpected character in where clause at {pos}: {text[pos:]!r}")
        pos = match.end()

        if match.group('number') is not None:
            number = match.group('number')
            tokens.append(('literal', float(number) if '.' in number else int(number)))
        elif match.group('squote') is not None:
            tokens.append(('literal', match.group('squote')))
        elif match.group('dquote') is not None:
            tokens.append(('literal', match.group('dquote')))
        elif match.group('op'):
            tokens.append(('op', match.group('op')))
        elif match.group('paren'):
            tokens.append((match.group('paren'), None))
        else:
            word = match.group('word')
            if word.upper() in ('AND', 'OR', 'NOT'):
                tokens.append((word.upper(), None))
            else:
                tokens.append(('field', word))
    return tokens


class _ClauseParser:
    """Recursive descent parser producing a predicate over sample fields"""

    def __init__(self, tokens):
        self.tokens = tokens
        self.pos = 0
        self.fields = []

    def peek(self):
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def take(self, kind):
        if self.peek() != kind:
            found = self.peek() or 'end of clause'
            raise ValidationError(f"Expected {kind} in where clause, found {found}")
        token = self.tokens[self.pos]
        self.pos += 1
        return token[1]

    def parse(self) -> Predicate:
        predicate = self.expr()
        if self.pos != len(self.tokens):
            raise ValidationError(f"Unexpected token in where clause: {self.tokens[self.pos][1]!r}")
        return predicate

    def expr(self) -> Predicate:
        terms = [self.term()]
        while self.peek() == 'OR':
            self.take('OR')
            terms.append(self.term())
        if len(terms) == 1:
            return terms[0]
        return lambda row: any(t(row) for t in terms)

    def term(self) -> Predicate:
        factors = [self.factor()]
        while self.peek() == 'AND':
            self.take('AND')
            factors.append(self.factor())
        if len(factors) == 1:
            return factors[0]
        return lambda row: all(f(row) for f in factors)

    def factor(self) -> Predicate:
        if self.peek() == 'NOT':
            self.take('NOT')
            inner = self.factor()
            return lambda row: not inner(row)
        if self.peek() == '(':
            self.take('(')
            inner = self.expr()
            self.take(')')
            return inner
        return self.comparison()

    def comparison(self) -> Predicate:
        name = self.take('field')
        if name not in self.fields:
            self.fields.append(name)
        compare = _COMPARATORS[self.take('op')]
        literal = self.take('literal')

        def predicate(row):
            # Raises KeyError for unknown fields; the evaluator treats it as a malformed sample
            value = row[name]
            if isinstance(literal, str):
                return compare(str(value), literal)
            return compare(_numeric(value), literal)

        return predicate


@dataclass(frozen=True)
class WhereClause:
    """Compiled where clause"""
    expression: str
    predicate: Predicate
    fields: Tuple[str, ...] = ()

    def matches(self, row: Mapping[str, Any]) -> bool:
        return bool(self.predicate(row))


def parse_where_clause(expression: Optional[str]) -> Optional[WhereClause]:
    """
    Compile a where clause; None or blank means no filter.

    Raises:
        ValidationError: If the clause is malformed or contains a statement
    """
    if expression is None:
        return None
    if not isinstance(expression, str):
        raise ValidationError(f"Where clause must be a string, got {type(expression).__name__}")
    if not expression.strip():
        return None

    upper = expression.upper()
    for statement in DISALLOWED_STATEMENTS:
        if re.search(rf'\b{statement}\b', upper):
            raise ValidationError(f"Statement {statement} is not allowed in a where clause")

    tokens = _tokenize(expression)
    if not tokens:
        return None

    parser = _ClauseParser(tokens)
    predicate = parser.parse()
    return WhereClause(expression=expression.strip(), predicate=predicate, fields=tuple(parser.fields))
