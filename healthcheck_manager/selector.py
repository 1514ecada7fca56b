"""
Label Selector

Parses and evaluates Kubernetes label-selector expressions such as
"env=prod, tier in (web,api), !canary". Evaluation is a pure function of
(labels, expression).
"""

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Tuple

from .errors import SelectorError


_KEY = r"(?:[A-Za-z0-9][-A-Za-z0-9_.]*/)?[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?"
_VALUE = r"(?:[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?)?"

_SET_RE = re.compile(rf"^\s*({_KEY})\s+(in|notin)\s*\(\s*([^()]*)\)\s*$")
_EQ_RE = re.compile(rf"^\s*({_KEY})\s*(==|=|!=)\s*({_VALUE})\s*$")
_NOT_EXISTS_RE = re.compile(rf"^\s*!\s*({_KEY})\s*$")
_EXISTS_RE = re.compile(rf"^\s*({_KEY})\s*$")
_VALUE_RE = re.compile(rf"^{_VALUE}$")


class Operator(Enum):
    """Selector requirement operators."""
    EQUALS = "="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"


@dataclass(frozen=True)
class Requirement:
    """A single comma-separated term of a selector."""
    key: str
    operator: Operator
    values: Tuple[str, ...] = ()

    def matches(self, labels: Dict[str, str]) -> bool:
        if self.operator == Operator.EXISTS:
            return self.key in labels
        if self.operator == Operator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator in (Operator.EQUALS, Operator.IN):
            return self.key in labels and labels[self.key] in self.values
        # != and notin also match when the key is absent
        return labels.get(self.key) not in self.values


def _split_terms(expression: str) -> List[str]:
    """Split on commas that are not inside a value set."""
    terms = []
    depth = 0
    current = []
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"unbalanced parenthesis in selector {expression!r}")
        if char == "," and depth == 0:
            terms.append("".join(current))
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise SelectorError(f"unbalanced parenthesis in selector {expression!r}")
    terms.append("".join(current))
    return terms


def _parse_term(term: str) -> Requirement:
    match = _SET_RE.match(term)
    if match:
        key, op, raw_values = match.groups()
        values = tuple(v.strip() for v in raw_values.split(","))
        if not values or any(not _VALUE_RE.match(v) for v in values):
            raise SelectorError(f"invalid value set in {term.strip()!r}")
        operator = Operator.IN if op == "in" else Operator.NOT_IN
        return Requirement(key, operator, values)

    match = _EQ_RE.match(term)
    if match:
        key, op, value = match.groups()
        operator = Operator.NOT_EQUALS if op == "!=" else Operator.EQUALS
        return Requirement(key, operator, (value,))

    match = _NOT_EXISTS_RE.match(term)
    if match:
        return Requirement(match.group(1), Operator.DOES_NOT_EXIST)

    match = _EXISTS_RE.match(term)
    if match:
        return Requirement(match.group(1), Operator.EXISTS)

    raise SelectorError(f"invalid selector requirement {term.strip()!r}")


@lru_cache(maxsize=1024)
def parse_selector(expression: str) -> Tuple[Requirement, ...]:
    """
    Parse a selector expression.

    Args:
        expression: Label selector string

    Returns:
        Tuple of requirements (empty for an empty expression)

    Raises:
        SelectorError: If the expression is malformed
    """
    if not expression or not expression.strip():
        return ()
    return tuple(_parse_term(term) for term in _split_terms(expression))


def matches(labels: Dict[str, str], expression: str) -> bool:
    """
    Return True if labels satisfy the selector expression.

    An empty expression selects nothing.

    Raises:
        SelectorError: If the expression is malformed
    """
    requirements = parse_selector(expression)
    if not requirements:
        return False
    return all(r.matches(labels or {}) for r in requirements)


def validate(expression: str) -> None:
    """Raise SelectorError if the expression is malformed."""
    parse_selector(expression)


_SET_OPERATORS = {"In": "in", "NotIn": "notin"}


def from_label_selector(selector: Dict[str, Any]) -> str:
    """
    Convert a Kubernetes LabelSelector (matchLabels and matchExpressions)
    into a selector expression.

    Raises:
        SelectorError: On an unsupported operator or a malformed expression
    """
    terms = [f"{k}={v}" for k, v in sorted((selector.get("matchLabels") or {}).items())]
    for requirement in selector.get("matchExpressions") or []:
        key = requirement.get("key")
        operator = requirement.get("operator")
        values = [str(v) for v in requirement.get("values") or []]
        if not key:
            raise SelectorError("matchExpressions entry has no key")
        if operator in _SET_OPERATORS:
            if not values:
                raise SelectorError(f"operator {operator} on {key!r} requires values")
            terms.append(f"{key} {_SET_OPERATORS[operator]} ({','.join(values)})")
        elif operator in ("Exists", "DoesNotExist"):
            if values:
                raise SelectorError(f"operator {operator} on {key!r} takes no values")
            terms.append(key if operator == "Exists" else f"!{key}")
        else:
            raise SelectorError(f"unsupported operator {operator!r} on {key!r}")
    return ",".join(terms)
