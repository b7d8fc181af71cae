"""Visible-list computation: category tags, custom queries, free-text search and sort."""

import logging
import re
from dataclasses import dataclass

from mailmirror.domain.models import SortOrder

logger = logging.getLogger(__name__)

QUERY_PREFIXES = ("subject", "from", "to", "has", "is", "label")
MAX_BARE_TERMS = 3

_TOKEN_RE = re.compile(r'[a-z]+:"[^"]*"?|"[^"]*"?|\S+')

HAS_PREDICATES = {
    "attachment": lambda item: item.has_attachments,
    "star": lambda item: item.is_starred,
    "priority": lambda item: item.priority.is_important,
}

IS_PREDICATES = {
    "unread": lambda item: not item.is_read,
    "read": lambda item: item.is_read,
    "starred": lambda item: item.is_starred,
    "important": lambda item: item.priority.is_important,
}


@dataclass(frozen=True)
class QueryClause:
    field: str
    terms: tuple = ()


def search_terms(text):
    return [term for term in (text or "").lower().split() if term]


def matches_text(item, terms):
    """AND-match every term against subject, sender, sender address and content."""
    if not terms:
        return True
    haystacks = (
        (item.subject or "").lower(),
        (item.sender or "").lower(),
        (item.sender_address or "").lower(),
        (item.content or "").lower(),
    )
    return all(any(term in hay for hay in haystacks) for term in terms)


def parse_query(query):
    """Split a saved/custom query into prefix clauses.

    Each prefix takes one quoted phrase or up to ``MAX_BARE_TERMS`` bare terms;
    bare terms stop at the next recognized prefix. Returns an empty list when
    the query has no recognized prefix.
    """
    clauses = []
    field = None
    terms = []
    open_for_terms = False

    def close():
        if field is not None:
            clauses.append(QueryClause(field, tuple(terms)))

    for token in _TOKEN_RE.findall((query or "").strip().lower()):
        prefix, sep, rest = token.partition(":")
        if sep and prefix in QUERY_PREFIXES:
            close()
            field, terms = prefix, []
            if rest.startswith('"'):
                phrase = rest.strip('"').strip()
                if phrase:
                    terms.append(phrase)
                open_for_terms = False
            else:
                if rest:
                    terms.append(rest)
                open_for_terms = True
            continue
        if field is not None and open_for_terms and len(terms) < MAX_BARE_TERMS:
            word = token.strip('"').strip()
            if word:
                terms.append(word)
    close()
    return clauses


def _clause_matches(clause, item):
    if clause.field in ("has", "is"):
        value = clause.terms[0] if clause.terms else ""
        predicates = HAS_PREDICATES if clause.field == "has" else IS_PREDICATES
        predicate = predicates.get(value)
        return bool(predicate and predicate(item))

    if clause.field == "subject":
        fields = [(item.subject or "").lower()]
    elif clause.field == "from":
        fields = [(item.sender_address or "").lower(), (item.sender or "").lower()]
    elif clause.field == "to":
        fields = [" ".join(item.recipients).lower()]
    else:
        fields = [label.lower() for label in item.labels]
    return all(any(term in value for value in fields) for term in clause.terms)


def matches_query(item, query, clauses=None):
    if clauses is None:
        clauses = parse_query(query)
    if not clauses:
        return matches_text(item, search_terms(query))
    return all(_clause_matches(clause, item) for clause in clauses)


def compute_visible(items, category_map, spec):
    """Filter without memoization; see :class:`FilterEngine` for the cached path."""
    if spec.is_default:
        return tuple(items)

    if spec.has_query:
        clauses = parse_query(spec.query)
        selected = [item for item in items if matches_query(item, spec.query, clauses)]
    elif spec.categories:
        active = spec.categories
        selected = [item for item in items if category_map.get(item.id, frozenset()) & active]
    else:
        selected = list(items)

    terms = search_terms(spec.search_text)
    if terms:
        selected = [item for item in selected if matches_text(item, terms)]
    return tuple(selected)


class FilterEngine:
    """Memoizes visible lists by filter cache key.

    The owner must call :meth:`invalidate` whenever an item is added, removed
    or changed; the memo is keyed by the filter alone.
    """

    def __init__(self):
        self._memo = {}
        self.hits = 0
        self.misses = 0

    def apply(self, items, category_map, spec):
        key = spec.cache_key()
        cached = self._memo.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        result = compute_visible(items, category_map, spec)
        self._memo[key] = result
        logger.debug("Filter %r matched %d of %d items", key, len(result), len(items))
        return result

    def invalidate(self):
        self._memo.clear()

    def __len__(self):
        return len(self._memo)


def sort_items(items, order=SortOrder.PRIORITY):
    if SortOrder(order) == SortOrder.PRIORITY:
        ranked = sorted(items, key=lambda item: item.timestamp, reverse=True)
        return tuple(sorted(ranked, key=lambda item: item.priority, reverse=True))
    return tuple(sorted(items, key=lambda item: item.timestamp, reverse=True))


__all__ = [
    "FilterEngine",
    "QueryClause",
    "compute_visible",
    "matches_query",
    "matches_text",
    "parse_query",
    "search_terms",
    "sort_items",
]
