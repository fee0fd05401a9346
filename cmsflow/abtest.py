"""A/B test winner selection."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from .constants import METRIC_WEIGHTS
from .contracts import WinnerInfo


def metric_weight(metric: str) -> float:
    return METRIC_WEIGHTS.get(metric, 1)


def score_variant(values: Mapping[str, Any], metrics: Iterable[str]) -> float:
    """Weighted sum of ``values`` over ``metrics``; a missing metric counts 0."""
    score = 0.0
    for metric in metrics:
        score += float(values.get(metric) or 0) * metric_weight(metric)
    return score


def score_variants(
    results: Mapping[str, Mapping[str, Any]], metrics: Sequence[str]
) -> Dict[str, float]:
    return {variant_id: score_variant(values, metrics) for variant_id, values in results.items()}


def select_winner(
    results: Mapping[str, Mapping[str, Any]],
    metrics: Sequence[str],
    order: Optional[Sequence[str]] = None,
) -> WinnerInfo:
    """Pick the best-scoring variant.

    Ties go to the variant declared first in ``order`` (defaults to the
    iteration order of ``results``). ``improvement`` is the percentage by
    which the winner beats the runner-up and is not clamped; it is ``None``
    when there is no runner-up or the runner-up scored zero.
    """

    if not results:
        raise ValueError("No variant results to rank")
    order = list(order) if order is not None else list(results)
    scores = score_variants(results, metrics)
    # sorted() is stable, so equal scores keep declaration order
    ranking = sorted((v for v in order if v in scores), key=lambda v: -scores[v])

    winner = ranking[0]
    improvement = None
    if len(ranking) > 1:
        runner_up = scores[ranking[1]]
        if runner_up != 0:
            improvement = (scores[winner] - runner_up) / runner_up * 100
    return WinnerInfo(variant_id=winner, score=scores[winner], improvement=improvement)
