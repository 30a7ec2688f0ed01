"""
Weighted substring search over catalog fields.

Used when semantic search is unavailable or finds nothing. Each field has
a fixed weight ordered by specificity; a candidate scores the best match
over all of its fields.
"""

from typing import Iterable, Optional

from ..classification import ClassifierConfig, ServiceHint
from ..registry.models import SearchResult, SearchSource, ServiceRecord

# (field name, weight), most specific first
FIELD_WEIGHTS = (
    ("label", 0.95),
    ("identifier", 0.90),
    ("title", 0.85),
    ("use-for", 0.80),
    ("description", 0.75),
    ("code", 0.70),
    ("entities", 0.65),
)

ALL_WORDS_FACTOR = 0.9
PARTIAL_FACTOR = 0.85
MIN_QUERY_WORD_LENGTH = 3


def query_words(query: str) -> list[str]:
    """Lowercased query words long enough to match on their own."""
    return [word for word in query.lower().split() if len(word) >= MIN_QUERY_WORD_LENGTH]


def searchable_fields(record: ServiceRecord, hint: Optional[ServiceHint]) -> dict[str, str]:
    entry = record.entry
    return {
        "label": hint.label if hint else "",
        "identifier": entry.id,
        "title": entry.title,
        "use-for": hint.use_for if hint else "",
        "description": entry.description,
        "code": hint.tcode if hint else "",
        "entities": " ".join(hint.entities) if hint else "",
    }


def score_record(
    record: ServiceRecord, query: str, hint: Optional[ServiceHint]
) -> tuple[float, str]:
    """
    Best field match for one record.

    Returns:
        (score, match reason); score is 0.0 when nothing matches
    """
    needle = query.strip().lower()
    if not needle:
        return 0.0, ""

    words = query_words(needle)
    fields = searchable_fields(record, hint)
    best_score = 0.0
    reason = ""

    for name, weight in FIELD_WEIGHTS:
        text = (fields[name] or "").lower()
        if not text:
            continue

        if needle in text:
            score, why = weight, f"{name} match"
        elif len(words) > 1 and all(word in text for word in words):
            score, why = weight * ALL_WORDS_FACTOR, f"{name} (all words)"
        elif len(words) == 1 and words[0] in text:
            score, why = weight * PARTIAL_FACTOR, f"{name} (partial)"
        else:
            continue

        # Strict comparison: on ties the more specific field keeps the reason
        if score > best_score:
            best_score, reason = score, why

    return best_score, reason


def lexical_search(
    records: Iterable[ServiceRecord], query: str, config: ClassifierConfig
) -> list[SearchResult]:
    """
    Score every record against the query and drop non-matches.

    Args:
        records: Candidate records (already domain-filtered)
        query: Free-text query
        config: Classifier config providing service hints

    Returns:
        Matching results in candidate order (not yet reranked)
    """
    results = []
    for record in records:
        score, reason = score_record(record, query, config.hint_for(record.service_id))
        if score > 0:
            results.append(
                SearchResult(
                    service_id=record.service_id,
                    score=score,
                    match_reason=reason,
                    source=SearchSource.LEXICAL,
                    record=record,
                )
            )
    return results
