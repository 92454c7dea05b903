"""Keyword text normalization and score-ordered deduplication."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

from keyword_scheduler.services.selection.types import DedupeDrop, DedupeResult, KeywordCandidate

WHITESPACE_PATTERN = re.compile(r"\s+")
PUNCTUATION_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
NORMALIZATION_STRATEGIES = ("basic", "folded")


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return PUNCTUATION_PATTERN.sub(" ", stripped)


def normalize(raw_text: str | None, strategy: str = "basic") -> str:
    """Canonicalize keyword text.

    ``basic`` trims, lowercases and collapses internal whitespace. ``folded``
    additionally strips diacritics and replaces punctuation with spaces, so
    "Café-Bar" and "cafe bar" compare equal.
    """
    if strategy not in NORMALIZATION_STRATEGIES:
        raise ValueError(f"Unknown normalization strategy: {strategy}")
    text = (raw_text or "").lower()
    if strategy == "folded":
        text = _fold(text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def slugify(value: str | None) -> str:
    """Slug for coverage key components: folded words joined by underscores."""
    return "_".join(normalize(value, "folded").replace("_", " ").split())


def sort_candidates(candidates: Iterable[KeywordCandidate]) -> list[KeywordCandidate]:
    """Score descending, then tie-break key ascending; stable for exact ties."""
    return sorted(candidates, key=lambda c: (-c.score, c.tie_break_key))


def is_valid_term(normalized_term: str, max_term_length: int | None = None) -> bool:
    if not normalized_term:
        return False
    return max_term_length is None or len(normalized_term) <= max_term_length


def dedupe_with_report(
    candidates: Iterable[KeywordCandidate],
    max_count: int,
    *,
    max_term_length: int | None = None,
) -> DedupeResult:
    """Keep the best-scoring candidate per normalized term, up to ``max_count``.

    Walks candidates in score order and stops as soon as ``max_count`` unique
    terms are kept. Candidates examined and rejected along the way are
    reported with a reason.
    """
    result = DedupeResult()
    if max_count <= 0:
        return result

    kept_by_term: dict[str, KeywordCandidate] = {}
    for candidate in sort_candidates(candidates):
        if len(result.kept) >= max_count:
            break
        if not is_valid_term(candidate.normalized_term, max_term_length):
            result.dropped.append(_drop(candidate, "invalid"))
            continue
        existing = kept_by_term.get(candidate.normalized_term)
        if existing is not None:
            result.dropped.append(_drop(candidate, "duplicate", kept_slice=existing.slice))
            continue
        kept_by_term[candidate.normalized_term] = candidate
        result.kept.append(candidate)
    return result


def dedupe(
    candidates: Iterable[KeywordCandidate],
    max_count: int,
    *,
    max_term_length: int | None = None,
) -> list[KeywordCandidate]:
    """Ordered unique candidates of length ``min(max_count, distinct terms)``."""
    return dedupe_with_report(candidates, max_count, max_term_length=max_term_length).kept


def _drop(
    candidate: KeywordCandidate,
    reason: str,
    *,
    kept_slice: str | None = None,
) -> DedupeDrop:
    return DedupeDrop(
        normalized_term=candidate.normalized_term,
        display_term=candidate.display_term,
        slice=candidate.slice,
        reason=reason,  # type: ignore[arg-type]
        score=candidate.score,
        kept_slice=kept_slice,  # type: ignore[arg-type]
    )
