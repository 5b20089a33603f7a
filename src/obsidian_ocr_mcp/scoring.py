"""Additive relevance scores for note blocks and recognized image text."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from itertools import combinations


@dataclass(frozen=True, slots=True)
class ScoringWeights:
    """Tuning constants. Titles must outrank any plain block."""

    title_base: int = 1000
    occurrence: int = 10
    title_occurrence: int = 100
    short_block_length: int = 200
    short_block_bonus: int = 20
    medium_block_length: int = 500
    medium_block_bonus: int = 10
    # (max distance, block bonus, title bonus), checked in order
    proximity: tuple[tuple[int, int, int], ...] = ((50, 30, 100), (100, 15, 50), (200, 5, 25))

    image_occurrence: int = 20
    short_text_length: int = 100
    short_text_bonus: int = 30
    medium_text_length: int = 300
    medium_text_bonus: int = 15

    image_bonus: int = 500
    image_filename_bonus: int = 1000
    filename_match: int = 2000

    task_base: int = 100
    task_occurrence: int = 50


DEFAULT_WEIGHTS = ScoringWeights()


def count_occurrences(text: str, term: str) -> int:
    """Non-overlapping, case-sensitive count; callers lowercase both sides."""

    if not term:
        return 0
    return text.count(term)


def proximity_bonus(distance: int, is_title: bool, weights: ScoringWeights = DEFAULT_WEIGHTS) -> int:
    for limit, block_bonus, title_bonus in weights.proximity:
        if distance < limit:
            return title_bonus if is_title else block_bonus
    return 0


def score_block(
    content: str,
    keywords: Sequence[str],
    is_title: bool = False,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> int:
    lowered = content.lower()
    score = weights.title_base if is_title else 0

    per_occurrence = weights.title_occurrence if is_title else weights.occurrence
    for keyword in keywords:
        score += count_occurrences(lowered, keyword) * per_occurrence

    if not is_title:
        if len(content) < weights.short_block_length:
            score += weights.short_block_bonus
        elif len(content) < weights.medium_block_length:
            score += weights.medium_block_bonus

    distinct = list(dict.fromkeys(k for k in keywords if k))
    for first, second in combinations(distinct, 2):
        first_index = lowered.find(first)
        second_index = lowered.find(second)
        if first_index != -1 and second_index != -1:
            score += proximity_bonus(abs(second_index - first_index), is_title, weights)

    return score


def score_recognition(
    text: str, keywords: Sequence[str], weights: ScoringWeights = DEFAULT_WEIGHTS
) -> int:
    lowered = text.lower()
    score = sum(count_occurrences(lowered, keyword) for keyword in keywords) * weights.image_occurrence

    length = len(text)
    if 0 < length < weights.short_text_length:
        score += weights.short_text_bonus
    elif length < weights.medium_text_length:
        score += weights.medium_text_bonus

    return score
