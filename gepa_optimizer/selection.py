# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Multi-objective selection: Pareto dominance, fronts, crowding distance.

A variant A dominates B when A is at least as good on every objective and
strictly better on at least one. The Pareto front is the set of evaluated
variants no other evaluated variant dominates.

Survivor strategies:
  pareto_first  Pareto front first, remaining slots by primary objective
  nsga2         successive non-dominated fronts, last front cut by crowding distance
  weighted      min-max normalized weighted sum of objectives
"""
import math
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from gepa_optimizer.variant import PromptVariant


class Direction(str, Enum):
    MAXIMIZE = "maximize"
    MINIMIZE = "minimize"


class SelectionStrategy(str, Enum):
    PARETO_FIRST = "pareto_first"
    NSGA2 = "nsga2"
    WEIGHTED = "weighted"


Objective = Tuple[str, Direction]
ObjectivesLike = Optional[Iterable[Union[Sequence[Any], Dict[str, Any]]]]

DEFAULT_OBJECTIVES: List[Objective] = [
    ("accuracy", Direction.MAXIMIZE),
    ("token_cost", Direction.MINIMIZE),
]


def default_objectives() -> List[Objective]:
    return list(DEFAULT_OBJECTIVES)


def normalize_objectives(objectives: ObjectivesLike) -> List[Objective]:
    """Accept ``(metric, direction)`` pairs or ``{"metric", "direction"}`` dicts."""
    if objectives is None:
        return default_objectives()

    normalized = []
    for obj in objectives:
        if isinstance(obj, dict):
            metric, direction = obj.get("metric"), obj.get("direction")
        else:
            try:
                metric, direction = obj
            except (TypeError, ValueError):
                raise ValueError("objective must be a (metric, direction) pair: {!r}".format(obj))
        if not isinstance(metric, str) or not metric:
            raise ValueError("objective metric must be a non-empty string: {!r}".format(obj))
        normalized.append((metric, Direction(direction)))

    if not normalized:
        raise ValueError("at least one objective is required")
    return normalized


def _compare(a: Optional[float], b: Optional[float], direction: Direction) -> int:
    """1 if a is better, -1 if worse, 0 if equal or not comparable."""
    if a is None or b is None or a == b:
        return 0
    if direction == Direction.MAXIMIZE:
        return 1 if a > b else -1
    return 1 if a < b else -1


def dominates(
    variant_a: PromptVariant,
    variant_b: PromptVariant,
    objectives: ObjectivesLike = None,
) -> bool:
    """True iff A is no worse on every objective and better on at least one.

    Unevaluated variants never dominate and are never dominated. An
    objective with a missing value on either side counts as a tie.
    """
    if not (variant_a.evaluated and variant_b.evaluated):
        return False

    strictly_better = False
    for metric, direction in normalize_objectives(objectives):
        result = _compare(variant_a.metric(metric), variant_b.metric(metric), direction)
        if result < 0:
            return False
        if result > 0:
            strictly_better = True
    return strictly_better


def pareto_front(
    population: Iterable[PromptVariant],
    objectives: ObjectivesLike = None,
) -> List[PromptVariant]:
    """Evaluated variants not dominated by any other evaluated variant."""
    objs = normalize_objectives(objectives)
    evaluated = [v for v in population if v.evaluated]
    return [
        v for v in evaluated
        if not any(other is not v and dominates(other, v, objs) for other in evaluated)
    ]


def non_dominated_sort(
    population: Iterable[PromptVariant],
    objectives: ObjectivesLike = None,
) -> List[List[PromptVariant]]:
    """Peel successive Pareto fronts off the evaluated population.

    Variants caught in a dominance cycle end up together in the last front.
    """
    objs = normalize_objectives(objectives)
    remaining = [v for v in population if v.evaluated]
    fronts = []
    while remaining:
        front = pareto_front(remaining, objs)
        if not front:
            # Missing metrics count as ties, so dominance can cycle
            fronts.append(remaining)
            break
        fronts.append(front)
        in_front = {id(v) for v in front}
        remaining = [v for v in remaining if id(v) not in in_front]
    return fronts


def crowding_distance(
    front: Sequence[PromptVariant],
    objectives: ObjectivesLike = None,
) -> Dict[str, float]:
    """NSGA-II crowding distance, keyed by variant id.

    Extreme variants on any objective get ``math.inf``. Fronts of two or
    fewer variants are all boundary points. Objectives with zero range
    contribute nothing.
    """
    if len(front) <= 2:
        return {v.id: math.inf for v in front}

    distances = {v.id: 0.0 for v in front}
    for metric, direction in normalize_objectives(objectives):
        ordered = sorted(front, key=lambda v: _sort_value(v, metric, direction))
        values = [v.metric(metric) or 0 for v in ordered]
        span = max(values) - min(values)
        if span == 0:
            continue

        distances[ordered[0].id] = math.inf
        distances[ordered[-1].id] = math.inf
        for i in range(1, len(ordered) - 1):
            vid = ordered[i].id
            if distances[vid] == math.inf:
                continue
            distances[vid] += abs(values[i + 1] - values[i - 1]) / span

    return distances


def select_survivors(
    population: Iterable[PromptVariant],
    count: int,
    objectives: ObjectivesLike = None,
    strategy: Union[str, SelectionStrategy] = SelectionStrategy.PARETO_FIRST,
    weights: Optional[Dict[str, float]] = None,
) -> List[PromptVariant]:
    """Pick up to ``count`` evaluated variants to carry forward.

    Unevaluated variants are dropped first. Asking for more than are
    available returns all of them.
    """
    strategy = SelectionStrategy(strategy)
    objs = normalize_objectives(objectives)
    evaluated = [v for v in population if v.evaluated]
    if count <= 0 or not evaluated:
        return []

    if strategy == SelectionStrategy.NSGA2:
        return _nsga2_select(evaluated, count, objs)
    if strategy == SelectionStrategy.WEIGHTED:
        return _weighted_select(evaluated, count, objs, weights)
    return _pareto_first_select(evaluated, count, objs)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def _sort_value(variant: PromptVariant, metric: str, direction: Direction) -> float:
    """Sort key where smaller is better. Missing values sort last."""
    value = variant.metric(metric)
    if value is None:
        return math.inf
    return -value if direction == Direction.MAXIMIZE else value


def _pick_by_crowding(
    front: List[PromptVariant],
    count: int,
    objectives: List[Objective],
) -> List[PromptVariant]:
    distances = crowding_distance(front, objectives)
    return sorted(front, key=lambda v: -distances.get(v.id, 0.0))[:count]


def _pareto_first_select(
    variants: List[PromptVariant],
    count: int,
    objectives: List[Objective],
) -> List[PromptVariant]:
    front = pareto_front(variants, objectives)
    if len(front) >= count:
        return _pick_by_crowding(front, count, objectives)

    in_front = {id(v) for v in front}
    rest = [v for v in variants if id(v) not in in_front]
    rest.sort(key=lambda v: tuple(_sort_value(v, m, d) for m, d in objectives))
    return front + rest[:count - len(front)]


def _nsga2_select(
    variants: List[PromptVariant],
    count: int,
    objectives: List[Objective],
) -> List[PromptVariant]:
    selected: List[PromptVariant] = []
    for front in non_dominated_sort(variants, objectives):
        needed = count - len(selected)
        if needed <= 0:
            break
        if len(front) <= needed:
            selected.extend(front)
        else:
            selected.extend(_pick_by_crowding(front, needed, objectives))
            break
    return selected


def _weighted_select(
    variants: List[PromptVariant],
    count: int,
    objectives: List[Objective],
    weights: Optional[Dict[str, float]] = None,
) -> List[PromptVariant]:
    if not weights:
        weights = {metric: 1.0 / len(objectives) for metric, _ in objectives}

    bounds = {}
    for metric, _ in objectives:
        values = [v.metric(metric) for v in variants if v.metric(metric) is not None]
        bounds[metric] = (min(values), max(values)) if values else (0.0, 0.0)

    def score(variant: PromptVariant) -> float:
        total = 0.0
        for metric, direction in objectives:
            value = variant.metric(metric)
            if value is None:
                continue
            lo, hi = bounds[metric]
            if hi == lo:
                normalized = 1.0
            elif direction == Direction.MAXIMIZE:
                normalized = (value - lo) / (hi - lo)
            else:
                normalized = (hi - value) / (hi - lo)
            total += normalized * weights.get(metric, 0.0)
        return total

    return sorted(variants, key=score, reverse=True)[:count]
