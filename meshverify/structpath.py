"""Parse path expressions and evaluate them against nested configuration snapshots.

Expressions follow the kubectl/JSONPath dialect used against proxy config
dumps, for example::

    {.configs[*].dynamicActiveClusters[?(@.cluster.name == 'outbound|80||b.svc')]}

Supported segments are ``.field``, ``['field']``, ``[*]``, ``[N]`` and
filters of the form ``[?(@.sub.field == 'literal')]`` (``==`` or ``!=``).
Each segment consumes the output set of the previous one; results from
several parents are flattened into a single list.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, List, Optional, Tuple, Union

from meshverify.models import Snapshot, VerificationError


class ParseError(VerificationError):
    """Raised when a path expression is malformed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"invalid path expression {expression!r}: {reason}")


class AssertionFailed(VerificationError):
    """Raised when a snapshot does not satisfy an assertion."""

    def __init__(self, expression: str, message: str, matches: int = 0, source: str = ""):
        self.expression = expression
        self.matches = matches
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"{message}{where}: {expression}")


_OPERATORS = ("==", "!=")
_NAME = re.compile(r"[A-Za-z0-9_\-]+")
_INDEX = re.compile(r"-?\d+")
_OPERATOR_CHARS = re.compile(r"[=!<>~]+")
_NUMBER = re.compile(r"-?\d+(\.\d+)?([eE][-+]?\d+)?")


# -- segments -----------------------------------------------------------------


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


@dataclass(frozen=True)
class Field:
    name: str

    def apply(self, value: Any) -> Iterator[Any]:
        if isinstance(value, Mapping) and self.name in value:
            yield value[self.name]


@dataclass(frozen=True)
class Index:
    position: int

    def apply(self, value: Any) -> Iterator[Any]:
        if _is_sequence(value) and -len(value) <= self.position < len(value):
            yield value[self.position]


@dataclass(frozen=True)
class Wildcard:
    def apply(self, value: Any) -> Iterator[Any]:
        if _is_sequence(value):
            yield from value
        elif isinstance(value, Mapping):
            yield from value.values()


@dataclass(frozen=True)
class Filter:
    path: Tuple[str, ...]  # field names below '@'
    operator: str
    literal: Any

    def apply(self, value: Any) -> Iterator[Any]:
        if not _is_sequence(value):
            return
        for item in value:
            if self.matches(item):
                yield item

    def matches(self, item: Any) -> bool:
        current = item
        for name in self.path:
            if not isinstance(current, Mapping) or name not in current:
                return False
            current = current[name]
        equal = _literal_equal(current, self.literal)
        return equal if self.operator == "==" else not equal


Segment = Union[Field, Index, Wildcard, Filter]


def _literal_equal(value: Any, literal: Any) -> bool:
    # bool is an int subclass; True must not equal 1
    if isinstance(value, bool) or isinstance(literal, bool):
        return type(value) is type(literal) and value == literal
    return value == literal


@dataclass(frozen=True)
class PathExpression:
    text: str
    segments: Tuple[Segment, ...]

    def __str__(self) -> str:
        return self.text


# -- parsing ------------------------------------------------------------------


def parse(text: str, *args: Any) -> PathExpression:
    """Parse a path expression.

    Args:
        text: Expression source. May be wrapped in ``{...}``.
        *args: Optional values interpolated into ``text`` with ``%``.

    Returns:
        An immutable PathExpression.

    Raises:
        ParseError: If the expression is malformed.
    """
    if args:
        try:
            text = text % args
        except (TypeError, ValueError) as exc:
            raise ParseError(text, f"cannot interpolate arguments: {exc}") from exc
    source = text.strip()
    if source.startswith("{"):
        if not source.endswith("}"):
            raise ParseError(text, "unbalanced '{'")
        source = source[1:-1].strip()
    elif source.endswith("}"):
        raise ParseError(text, "unbalanced '}'")
    if source.startswith("$"):
        source = source[1:]
    if not source:
        raise ParseError(text, "empty expression")
    if source == ".":
        return PathExpression(text=text, segments=())

    segments: List[Segment] = []
    pos = 0
    while pos < len(source):
        ch = source[pos]
        if ch == ".":
            match = _NAME.match(source, pos + 1)
            if not match:
                raise ParseError(text, f"expected a field name at offset {pos + 1}")
            segments.append(Field(match.group(0)))
            pos = match.end()
        elif ch == "[":
            segment, pos = _parse_subscript(source, pos + 1, text)
            segments.append(segment)
        elif ch == "]":
            raise ParseError(text, f"unbalanced ']' at offset {pos}")
        else:
            raise ParseError(text, f"unexpected character {ch!r} at offset {pos}")
    return PathExpression(text=text, segments=tuple(segments))


def _parse_subscript(source: str, pos: int, text: str) -> Tuple[Segment, int]:
    if source.startswith("?(", pos):
        return _parse_filter(source, pos + 2, text)
    if source.startswith(("'", '"'), pos):
        name, pos = _read_string(source, pos, text)
        return Field(name), _expect(source, pos, "]", text)

    close = source.find("]", pos)
    if close < 0:
        raise ParseError(text, "unbalanced '['")
    body = source[pos:close].strip()
    if body == "*":
        return Wildcard(), close + 1
    if _INDEX.fullmatch(body):
        return Index(int(body)), close + 1
    raise ParseError(text, f"unsupported subscript [{body}]")


def _parse_filter(source: str, pos: int, text: str) -> Tuple[Filter, int]:
    pos = _skip_spaces(source, pos)
    pos = _expect(source, pos, "@", text)
    path = []
    while source.startswith(".", pos):
        match = _NAME.match(source, pos + 1)
        if not match:
            raise ParseError(text, f"expected a field name at offset {pos + 1}")
        path.append(match.group(0))
        pos = match.end()

    pos = _skip_spaces(source, pos)
    match = _OPERATOR_CHARS.match(source, pos)
    if not match:
        raise ParseError(text, f"expected a comparison operator at offset {pos}")
    operator = match.group(0)
    if operator not in _OPERATORS:
        raise ParseError(text, f"unknown filter operator {operator!r}")
    pos = _skip_spaces(source, match.end())

    literal, pos = _read_literal(source, pos, text)
    pos = _skip_spaces(source, pos)
    pos = _expect(source, pos, ")", text)
    pos = _expect(source, pos, "]", text)
    return Filter(path=tuple(path), operator=operator, literal=literal), pos


def _read_literal(source: str, pos: int, text: str) -> Tuple[Any, int]:
    if source.startswith(("'", '"'), pos):
        return _read_string(source, pos, text)
    end = pos
    while end < len(source) and source[end] not in " )":
        end += 1
    word = source[pos:end]
    if word == "true":
        return True, end
    if word == "false":
        return False, end
    if word == "null":
        return None, end
    if _NUMBER.fullmatch(word):
        return (float(word) if any(c in word for c in ".eE") else int(word)), end
    if not word:
        raise ParseError(text, f"expected a literal at offset {pos}")
    raise ParseError(text, f"invalid literal {word!r}")


def _read_string(source: str, pos: int, text: str) -> Tuple[str, int]:
    quote = source[pos]
    chars = []
    i = pos + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\" and i + 1 < len(source):
            chars.append(source[i + 1])
            i += 2
            continue
        if ch == quote:
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise ParseError(text, "unterminated string literal")


def _expect(source: str, pos: int, token: str, text: str) -> int:
    if not source.startswith(token, pos):
        if pos >= len(source) and token in ")]":
            raise ParseError(text, f"unbalanced brackets: missing {token!r}")
        raise ParseError(text, f"expected {token!r} at offset {pos}")
    return pos + len(token)


def _skip_spaces(source: str, pos: int) -> int:
    while pos < len(source) and source[pos] == " ":
        pos += 1
    return pos


# -- evaluation ---------------------------------------------------------------


def evaluate(expression: Union[PathExpression, str], snapshot: Any) -> List[Any]:
    """Return every sub-value of ``snapshot`` selected by ``expression``.

    Never mutates the snapshot and never raises for a well-formed
    expression: unmatched paths produce an empty list.
    """
    if isinstance(expression, str):
        expression = parse(expression)
    data = snapshot.data if isinstance(snapshot, Snapshot) else snapshot
    current = [data]
    for segment in expression.segments:
        current = [out for value in current for out in segment.apply(value)]
        if not current:
            break
    return current


# -- assertions ---------------------------------------------------------------


class Expectation(str, Enum):
    MUST_EXIST = "exists"
    MUST_NOT_EXIST = "not-exists"


@dataclass(frozen=True)
class AssertionResult:
    expression: str
    expectation: Expectation
    matches: int
    source: str = ""

    @property
    def ok(self) -> bool:
        if self.expectation is Expectation.MUST_EXIST:
            return self.matches > 0
        return self.matches == 0

    def to_error(self) -> AssertionFailed:
        if self.expectation is Expectation.MUST_EXIST:
            message = "expected at least one match, found 0"
        else:
            message = f"expected no match, found {self.matches}"
        return AssertionFailed(self.expression, message, self.matches, self.source)


@dataclass(frozen=True)
class Assertion:
    expression: PathExpression
    expectation: Expectation = Expectation.MUST_EXIST

    def evaluate(self, snapshot: Any) -> AssertionResult:
        source = snapshot.source if isinstance(snapshot, Snapshot) else ""
        return AssertionResult(
            expression=self.expression.text,
            expectation=self.expectation,
            matches=len(evaluate(self.expression, snapshot)),
            source=source,
        )

    def check(self, snapshot: Any) -> None:
        """Raise AssertionFailed unless ``snapshot`` satisfies the assertion."""
        result = self.evaluate(snapshot)
        if not result.ok:
            raise result.to_error()

    def __str__(self) -> str:
        return f"{self.expectation.value} {self.expression.text}"


def exists(text: str, *args: Any) -> Assertion:
    return Assertion(parse(text, *args), Expectation.MUST_EXIST)


def not_exists(text: str, *args: Any) -> Assertion:
    return Assertion(parse(text, *args), Expectation.MUST_NOT_EXIST)


class Validator:
    """Chainable checks against one snapshot.

    Each call records its failure; ``check()`` raises the first one.
    Malformed expressions raise ParseError immediately.

    Example:
        for_snapshot(dump).exists("{.configs[*].dynamicActiveClusters[?(@.cluster.name == '%s')]}",
                                  "outbound|80||b.svc").check()
    """

    def __init__(self, snapshot: Snapshot, errors: Optional[List[AssertionFailed]] = None):
        self._snapshot = snapshot
        self._errors = errors if errors is not None else []

    @property
    def errors(self) -> List[AssertionFailed]:
        return list(self._errors)

    def exists(self, text: str, *args: Any) -> "Validator":
        return self._record(exists(text, *args))

    def not_exists(self, text: str, *args: Any) -> "Validator":
        return self._record(not_exists(text, *args))

    def equals(self, expected: Any, text: str, *args: Any) -> "Validator":
        expression = parse(text, *args)
        matches = evaluate(expression, self._snapshot)
        if not matches:
            self._errors.append(AssertionFailed(
                expression.text, "expected a value, found no match", 0, self._snapshot.source,
            ))
        elif matches[0] != expected:
            self._errors.append(AssertionFailed(
                expression.text,
                f"expected {expected!r}, found {matches[0]!r}",
                len(matches),
                self._snapshot.source,
            ))
        return self

    def select(self, text: str, *args: Any) -> "Validator":
        """Narrow later checks to the first value matched by the expression."""
        expression = parse(text, *args)
        matches = evaluate(expression, self._snapshot)
        if not matches:
            self._errors.append(AssertionFailed(
                expression.text, "nothing to select", 0, self._snapshot.source,
            ))
            return Validator(Snapshot(self._snapshot.source, None), self._errors)
        return Validator(Snapshot(self._snapshot.source, matches[0]), self._errors)

    def check(self) -> None:
        if self._errors:
            raise self._errors[0]

    def _record(self, assertion: Assertion) -> "Validator":
        result = assertion.evaluate(self._snapshot)
        if not result.ok:
            self._errors.append(result.to_error())
        return self


def for_snapshot(data: Any, source: str = "") -> Validator:
    snapshot = data if isinstance(data, Snapshot) else Snapshot(source, data)
    return Validator(snapshot)
