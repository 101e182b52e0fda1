"""
Score Combiner
Pure scoring functions for the matching pipeline.

Formulas:
    directional = 0.8 * max_similarity + 0.2 * average_similarity
    combined    = forward * sqrt(1 + backward)
    multiplier  = sqrt(sum(matched topic similarities) + 1)
    final       = combined * multiplier
    keyword     = 0.8 * specific + 0.2 * general
"""
import math
from typing import Iterable, Mapping, Optional

from backend.core.config import settings


def directional_score(
    similarities: Iterable[float],
    max_weight: Optional[float] = None,
    average_weight: Optional[float] = None,
) -> float:
    """
    Score one candidate from the per-statement best similarities.

    Args:
        similarities: One best similarity per searcher statement that matched
            the candidate. Statements with no match are not included.
        max_weight: Weight of the maximum similarity.
        average_weight: Weight of the mean similarity.

    Returns:
        Weighted score, 0.0 when there are no similarities.
    """
    values = list(similarities)
    if not values:
        return 0.0

    max_weight = settings.forward_max_weight if max_weight is None else max_weight
    average_weight = settings.forward_average_weight if average_weight is None else average_weight

    maximum = max(values)
    average = sum(values) / len(values)
    return max_weight * maximum + average_weight * average


def combine_directional_scores(
    forward_scores: Mapping[str, float],
    backward_scores: Mapping[str, float],
) -> dict[str, float]:
    """
    Merge forward and backward scores: forward * sqrt(1 + backward).

    Candidates from either side are included; a missing side counts as 0.
    A candidate with only a backward score therefore combines to 0.0.

    Args:
        forward_scores: Candidate -> forward score.
        backward_scores: Candidate -> backward score.

    Returns:
        Candidate -> combined score.
    """
    combined = {}
    for user_id in {**forward_scores, **backward_scores}:
        forward = forward_scores.get(user_id, 0.0)
        backward = backward_scores.get(user_id, 0.0)
        combined[user_id] = forward * math.sqrt(1 + backward)
    return combined


def topic_multiplier(matched_similarities: Iterable[float]) -> float:
    """
    Topical interest multiplier: sqrt(sum + 1).

    Returns 1.0 when no topics matched.
    """
    return math.sqrt(sum(matched_similarities) + 1)


def apply_multipliers(
    base_scores: Mapping[str, float],
    multipliers: Mapping[str, float],
) -> dict[str, float]:
    """
    Scale base scores by topic multipliers.

    Only candidates with a base score are returned; a multiplier never
    creates a candidate on its own.
    """
    return {
        user_id: base * multipliers.get(user_id, 1.0)
        for user_id, base in base_scores.items()
    }


def combine_search_scores(
    specific_scores: Mapping[str, float],
    general_scores: Mapping[str, float],
    specific_weight: Optional[float] = None,
) -> dict[str, float]:
    """
    Blend keyword-specific and general scores.

    Args:
        specific_scores: Candidate -> score from keyword-generated asks.
        general_scores: Candidate -> no-keyword final score.
        specific_weight: Share of the specific score (default 0.8).

    Returns:
        Candidate -> blended score over the union of candidates.
    """
    weight = settings.specific_search_weight if specific_weight is None else specific_weight

    combined = {}
    for user_id in {**specific_scores, **general_scores}:
        specific = specific_scores.get(user_id, 0.0)
        general = general_scores.get(user_id, 0.0)
        combined[user_id] = weight * specific + (1 - weight) * general
    return combined
