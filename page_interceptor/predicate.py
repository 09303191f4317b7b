"""Tiny filter-predicate language used to decide which requests to keep.

A filter script is a JavaScript-looking fragment such as::

    function(url) { return url.includes('/ajax/') && url.includes('vrf='); }

Only the expression after the last ``return`` is looked at, and only one
shape is understood: an OR (``||``) of AND (``&&``) clauses over
``url.includes('<substring>')`` terms. Nothing is ever executed. Anything
that does not fit the shape makes its own clause false; a script with no
``return`` or an empty return expression matches every URL.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_INCLUDES_RE = re.compile(r"""url\.includes\(\s*(['"])(.*?)\1\s*\)""")


@dataclass(frozen=True)
class IncludesTerm:
    needle: str

    def matches(self, url: str) -> bool:
        return self.needle in url


@dataclass(frozen=True)
class UnparsableTerm:
    text: str

    def matches(self, url: str) -> bool:
        return False


Term = IncludesTerm | UnparsableTerm


@dataclass(frozen=True)
class Clause:
    text: str
    terms: tuple[Term, ...]

    def matches(self, url: str) -> bool:
        # An empty term list is vacuously true.
        return all(term.matches(url) for term in self.terms)


@dataclass(frozen=True)
class Predicate:
    expression: str
    clauses: tuple[Clause, ...]

    def first_match(self, url: str) -> Clause | None:
        for clause in self.clauses:
            if clause.matches(url):
                return clause
        return None

    def matches(self, url: str) -> bool:
        return self.first_match(url) is not None


def extract_return_expression(script: str) -> str:
    """Return the trimmed text between the last ``return`` and the next ``;``."""
    idx = script.rfind("return")
    if idx == -1:
        return ""
    return script[idx + len("return"):].split(";", 1)[0].strip()


def _parse_term(text: str) -> Term:
    match = _INCLUDES_RE.search(text)
    if match is None:
        return UnparsableTerm(text)
    return IncludesTerm(match.group(2))


def _wraps_whole(text: str) -> bool:
    """True when the leading ``(`` of *text* is closed by its final ``)``."""
    depth = 0
    quote = ""
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = ""
            continue
        if ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i == len(text) - 1
    return False


def _strip_outer_parens(text: str) -> str:
    text = text.strip()
    while text.startswith("(") and text.endswith(")") and _wraps_whole(text):
        text = text[1:-1].strip()
    return text


def _parse_clause(text: str) -> Clause:
    body = _strip_outer_parens(text)
    parts = [part.strip() for part in body.split("&&")]
    return Clause(text=text.strip(), terms=tuple(_parse_term(p) for p in parts if p))


def parse_predicate(script: str) -> Predicate | None:
    """Parse *script* into a :class:`Predicate`; ``None`` means "match everything"."""
    expression = extract_return_expression(script)
    if not expression:
        return None
    return Predicate(
        expression=expression,
        clauses=tuple(_parse_clause(part) for part in expression.split("||")),
    )


def evaluate_filter_predicate(script: str, url: str) -> bool:
    predicate = parse_predicate(script)
    if predicate is None:
        logger.debug("No usable return expression, capturing all. url=%s", url)
        return True
    clause = predicate.first_match(url)
    if clause is not None:
        logger.debug("Predicate MATCH url=%s clause=%s", url, clause.text)
        return True
    logger.debug("Predicate MISS url=%s expr=%s", url, predicate.expression)
    return False
