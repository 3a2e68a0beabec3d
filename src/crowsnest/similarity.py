"""Field-level comparison of schema output against model output.

Everything here is pure: no I/O, no logging, no shared state.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

DEFAULT_SIMILARITY_THRESHOLD = 0.6


@dataclass(frozen=True)
class Valid:
    @property
    def is_valid(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    failures: tuple[str, ...]

    @property
    def is_valid(self) -> bool:
        return False


ValidationResult = Valid | Invalid


def normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower()).strip()


def normalized_equals(a: str, b: str) -> bool:
    return normalize(a) == normalize(b)


def _tokens(text: str) -> set[str]:
    return set(normalize(text).split())


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = _tokens(a)
    tokens_b = _tokens(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def is_similar_text(a: str, b: str, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> bool:
    return jaccard_similarity(a, b) >= threshold


def _contains_either_way(a: str, b: str) -> bool:
    left = normalize(a)
    right = normalize(b)
    return left in right or right in left


def validate_extraction(
    schema_fields: Mapping[str, str],
    llm_fields: Mapping[str, str],
    exact_fields: Sequence[str] = (),
    contains_fields: Sequence[str] = (),
    fuzzy_fields: Sequence[str] = (),
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> ValidationResult:
    """Compare each configured field present in both maps.

    Only the names passed in the three field groups are checked; a field missing
    from either map is skipped.
    """
    failures: list[str] = []

    def _both(name: str) -> tuple[str, str] | None:
        if name not in schema_fields or name not in llm_fields:
            return None
        return schema_fields[name], llm_fields[name]

    for name in exact_fields:
        pair = _both(name)
        if pair and not normalized_equals(*pair):
            failures.append(f"{name}: expected exact match, schema={pair[0]!r} llm={pair[1]!r}")

    for name in contains_fields:
        pair = _both(name)
        if pair and not _contains_either_way(*pair):
            failures.append(f"{name}: neither value contains the other, schema={pair[0]!r} llm={pair[1]!r}")

    for name in fuzzy_fields:
        pair = _both(name)
        if pair:
            score = jaccard_similarity(*pair)
            if score < threshold:
                failures.append(f"{name}: similarity {score:.2f} below threshold {threshold:.2f}")

    if failures:
        return Invalid(tuple(failures))
    return Valid()
