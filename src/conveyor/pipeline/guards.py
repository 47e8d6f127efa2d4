"""Guard expressions — conditional execution for stages.

A guard is a small boolean expression evaluated against the stage's
environment scope and the run parameters::

    params.DEPLOY_TARGET == 'production' && env.BRANCH_NAME =~ '^release/'
    !params.SKIP_TESTS || (BUILD_NUMBER > 10 and not params.DRY_RUN)

Supported:
    - References: ``env.NAME``, ``params.NAME``, bare ``NAME`` (environment
      first, then parameters)
    - Literals: quoted strings, numbers, ``true``/``false``/``null``
    - Operators: ``||``/``or``, ``&&``/``and``, ``!``/``not``,
      ``== != < <= > >=``, regex search ``=~``, parentheses

There is no arbitrary code execution. Parse errors and unresolvable
references raise :class:`GuardEvaluationError`; callers decide the policy.
"""

from __future__ import annotations

import logging
import operator
import re
from functools import lru_cache
from typing import Any, Callable

from conveyor.pipeline.environment import EnvironmentContext
from conveyor.pipeline.errors import GuardEvaluationError
from conveyor.pipeline.models import RunParameters, StageDefinition

logger = logging.getLogger("conveyor.pipeline.guards")

_TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<number>\d+(?:\.\d+)?)
    |(?P<op>==|!=|<=|>=|=~|&&|\|\||[<>!()])
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)?)
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_LITERALS: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}
_COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_FALSY_STRINGS = {"", "false", "0"}

# A compiled guard: (env, params) -> value
Evaluator = Callable[[EnvironmentContext, RunParameters], Any]


def evaluate(
    stage: StageDefinition,
    ctx: EnvironmentContext,
    params: RunParameters,
) -> bool:
    """Evaluate a stage's guard. A missing guard is ``true``.

    Raises:
        GuardEvaluationError: On parse errors or unresolvable references.
    """
    if stage.when is None or not stage.when.strip():
        return True
    return evaluate_expression(stage.when, ctx, params)


def evaluate_expression(expression: str, ctx: EnvironmentContext, params: RunParameters) -> bool:
    """Evaluate a guard expression string to a boolean."""
    evaluator = compile_expression(expression)
    try:
        return truthy(evaluator(ctx, params))
    except GuardEvaluationError:
        raise
    except (TypeError, ValueError) as exc:
        raise GuardEvaluationError(f"Cannot evaluate '{expression}': {exc}") from exc


@lru_cache(maxsize=256)
def compile_expression(expression: str) -> Evaluator:
    """Parse an expression once; evaluation is lazy so ``&&``/``||`` short-circuit."""
    parser = _Parser(expression, _tokenize(expression))
    evaluator = parser.parse_or()
    if not parser.at_end():
        raise GuardEvaluationError(
            f"Unexpected token '{parser.peek()}' in guard '{expression}'"
        )
    return evaluator


def truthy(value: Any) -> bool:
    """Boolean view of a guard value; environment strings like "false" are false."""
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


# ── Tokenizer ────────────────────────────────────────────────────────────────


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(expression):
        if expression[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expression, pos)
        if not match:
            raise GuardEvaluationError(
                f"Unexpected character {expression[pos]!r} at position {pos} in guard '{expression}'"
            )
        kind = match.lastgroup or ""
        text = match.group(kind)
        if kind == "name" and text in _KEYWORD_OPS:
            kind, text = "op", _KEYWORD_OPS[text]
        tokens.append((kind, text))
        pos = match.end()
    if not tokens:
        raise GuardEvaluationError("Empty guard expression")
    return tokens


# ── Parser (recursive descent, builds closures) ──────────────────────────────


class _Parser:
    def __init__(self, expression: str, tokens: list[tuple[str, str]]):
        self._expression = expression
        self._tokens = tokens
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def peek(self) -> str | None:
        return None if self.at_end() else self._tokens[self._pos][1]

    def _accept(self, op: str) -> bool:
        if not self.at_end() and self._tokens[self._pos] == ("op", op):
            self._pos += 1
            return True
        return False

    def _error(self, message: str) -> GuardEvaluationError:
        return GuardEvaluationError(f"{message} in guard '{self._expression}'")

    def parse_or(self) -> Evaluator:
        left = self.parse_and()
        while self._accept("||"):
            right = self.parse_and()
            left = _or(left, right)
        return left

    def parse_and(self) -> Evaluator:
        left = self.parse_not()
        while self._accept("&&"):
            right = self.parse_not()
            left = _and(left, right)
        return left

    def parse_not(self) -> Evaluator:
        if self._accept("!"):
            inner = self.parse_not()
            return lambda env, params: not truthy(inner(env, params))
        return self.parse_comparison()

    def parse_comparison(self) -> Evaluator:
        left = self.parse_atom()
        if not self.at_end() and self._tokens[self._pos][0] == "op":
            op = self._tokens[self._pos][1]
            if op in _COMPARISONS or op == "=~":
                self._pos += 1
                right = self.parse_atom()
                if op == "=~":
                    return _regex(left, right)
                return _compare(op, left, right)
        return left

    def parse_atom(self) -> Evaluator:
        if self.at_end():
            raise self._error("Unexpected end of expression")
        kind, text = self._tokens[self._pos]
        self._pos += 1

        if kind == "op" and text == "(":
            inner = self.parse_or()
            if not self._accept(")"):
                raise self._error("Missing ')'")
            return inner
        if kind == "string":
            value = re.sub(r"\\(.)", r"\1", text[1:-1])
            return lambda env, params: value
        if kind == "number":
            number = float(text) if "." in text else int(text)
            return lambda env, params: number
        if kind == "name":
            if text in _LITERALS:
                literal = _LITERALS[text]
                return lambda env, params: literal
            return _reference(text)
        raise self._error(f"Unexpected token '{text}'")


def _or(left: Evaluator, right: Evaluator) -> Evaluator:
    return lambda env, params: truthy(left(env, params)) or truthy(right(env, params))


def _and(left: Evaluator, right: Evaluator) -> Evaluator:
    return lambda env, params: truthy(left(env, params)) and truthy(right(env, params))


def _compare(op: str, left: Evaluator, right: Evaluator) -> Evaluator:
    fn = _COMPARISONS[op]

    def _evaluate(env: EnvironmentContext, params: RunParameters) -> bool:
        lhs, rhs = _coerce_pair(left(env, params), right(env, params))
        if op not in ("==", "!=") and (lhs is None or rhs is None):
            raise GuardEvaluationError(f"Cannot order null values with '{op}'")
        return fn(lhs, rhs)

    return _evaluate


def _regex(left: Evaluator, right: Evaluator) -> Evaluator:
    def _evaluate(env: EnvironmentContext, params: RunParameters) -> bool:
        subject = left(env, params)
        pattern = right(env, params)
        if subject is None:
            return False
        try:
            return re.search(str(pattern), str(subject)) is not None
        except re.error as exc:
            raise GuardEvaluationError(f"Invalid regex {pattern!r}: {exc}") from exc

    return _evaluate


def _reference(name: str) -> Evaluator:
    scope, _, key = name.rpartition(".")

    def _evaluate(env: EnvironmentContext, params: RunParameters) -> Any:
        if scope == "env":
            value = env.get(key)
            if value is None:
                raise GuardEvaluationError(f"Unknown environment variable '{key}'")
            return value
        if scope == "params":
            if key not in params:
                raise GuardEvaluationError(f"Unknown parameter '{key}'")
            return params.get(key)
        if scope:
            raise GuardEvaluationError(f"Unknown reference scope '{scope}' in '{name}'")
        value = env.get(key)
        if value is not None:
            return value
        if key in params:
            return params.get(key)
        raise GuardEvaluationError(f"Unresolvable variable '{key}'")

    return _evaluate


def _coerce_pair(lhs: Any, rhs: Any) -> tuple[Any, Any]:
    """Align an environment string with a typed literal before comparing."""
    if isinstance(lhs, str) and not isinstance(rhs, str):
        return _coerce(lhs, rhs), rhs
    if isinstance(rhs, str) and not isinstance(lhs, str):
        return lhs, _coerce(rhs, lhs)
    return lhs, rhs


def _coerce(text: str, like: Any) -> Any:
    if isinstance(like, bool):
        lowered = text.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return text
    if isinstance(like, (int, float)):
        try:
            return float(text) if isinstance(like, float) or "." in text else int(text)
        except ValueError as exc:
            raise GuardEvaluationError(f"Cannot compare {text!r} with number {like!r}") from exc
    return text
