"""Structured search queries: quoted phrases, ``-negation`` and ``OR`` chains."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace

QUOTES = ('"', "'")
OR_KEYWORD = "or"


@dataclass(frozen=True, slots=True)
class SearchTerm:
    text: str
    is_negated: bool = False
    is_phrase: bool = False
    alternatives: tuple[SearchTerm, ...] = ()

    def with_alternative(self, alternative: SearchTerm) -> SearchTerm:
        return replace(self, alternatives=(*self.alternatives, alternative))


def tokenize_query(query: str) -> list[str]:
    """Split *query* on whitespace, keeping quoted phrases (quotes included) intact.

    An unterminated quote swallows the rest of the query.
    """

    tokens: list[str] = []
    current = ""
    quote: str | None = None

    for char in query:
        if quote is None and char in QUOTES:
            quote = char
            current += char
        elif quote is not None and char == quote:
            current += char
            tokens.append(current.strip())
            current = ""
            quote = None
        elif quote is None and char.isspace():
            if current.strip():
                tokens.append(current.strip())
            current = ""
        else:
            current += char

    if current.strip():
        tokens.append(current.strip())

    return [token for token in tokens if token]


def parse_token(token: str) -> SearchTerm:
    is_negated = token.startswith("-")
    if is_negated:
        token = token[1:]

    is_phrase = len(token) >= 2 and token[0] in QUOTES and token[-1] == token[0]
    if is_phrase:
        token = token[1:-1]

    return SearchTerm(text=token.lower(), is_negated=is_negated, is_phrase=is_phrase)


def parse_query(query: str) -> list[SearchTerm]:
    """Parse *query* into search terms.

    ``OR`` attaches the token that follows it as an alternative of the
    previous term; a dangling ``OR`` is ignored.
    """

    terms: list[SearchTerm] = []
    tokens = tokenize_query(query)

    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.lower() == OR_KEYWORD:
            if terms and i + 1 < len(tokens):
                terms[-1] = terms[-1].with_alternative(parse_token(tokens[i + 1]))
                i += 2
                continue
        else:
            terms.append(parse_token(token))
        i += 1

    return terms


def matches_keywords(keywords: Iterable[str], content: str) -> bool:
    """Every whitespace separated word of every keyword must occur in *content*."""

    return all(word in content for keyword in keywords for word in keyword.split())


def text_matches(term: SearchTerm, content: str) -> bool:
    if term.is_phrase:
        return term.text in content
    return matches_keywords([term.text], content)


def term_matches(term: SearchTerm, content: str) -> bool:
    """Main term or any alternative occurs in *content* (already lowercased)."""

    if text_matches(term, content):
        return True
    return any(text_matches(alternative, content) for alternative in term.alternatives)


def evaluate_terms(terms: Sequence[SearchTerm], content: str) -> bool:
    """Return ``True`` when lowercased *content* satisfies every term.

    Negation applies to the main term only, alternatives of a negated term
    are not consulted.
    """

    for term in terms:
        if not term.text:
            continue
        if term.is_negated:
            if text_matches(term, content):
                return False
        elif not term_matches(term, content):
            return False
    return True


def term_keywords(terms: Iterable[SearchTerm]) -> list[str]:
    """Flat keyword list (main text of positive terms) used for scoring."""

    return [term.text for term in terms if not term.is_negated and term.text]


def negated_terms(terms: Iterable[SearchTerm]) -> list[SearchTerm]:
    return [term for term in terms if term.is_negated and term.text]


def match_positive_terms(content: str, terms: Sequence[SearchTerm]) -> tuple[bool, list[str]]:
    """Check *content* against each positive term, ``OR`` alternatives included.

    Returns whether every term matched and, per matched term, the text that hit.
    """

    lowered = content.lower()
    matched: list[str] = []
    missing = False
    for term in terms:
        if term.is_negated or not term.text:
            continue
        hit = next(
            (option.text for option in (term, *term.alternatives) if text_matches(option, lowered)),
            None,
        )
        if hit is None:
            missing = True
        else:
            matched.append(hit)
    return not missing, matched
