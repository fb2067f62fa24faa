# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Result models for evaluation and optimization runs."""
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from gepa_optimizer.selection import ObjectivesLike, pareto_front
from gepa_optimizer.task import Task
from gepa_optimizer.variant import PromptVariant


class RunnerResponse(BaseModel):
    """Normalized result of one runner call."""

    ok: bool = True
    output: str = ""
    tokens: int = 0
    error: Optional[Any] = None


class TaskResult(BaseModel):
    """Outcome of running one task against one variant."""

    task: Task
    success: bool = False
    output: Optional[str] = None
    tokens: int = 0
    latency_ms: float = 0.0
    error: Optional[Any] = None


class EvaluationResult(BaseModel):
    """Aggregate metrics for one variant over a task set."""

    variant_id: str = ""
    accuracy: float = 0.0
    token_cost: int = 0
    latency_ms: float = 0.0
    results: List[TaskResult] = Field(default_factory=list)

    @property
    def failures(self) -> List[TaskResult]:
        return [r for r in self.results if not r.success]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)


class GenerationSummary(BaseModel):
    """What happened in one generation."""

    generation: int
    timestamp: float = Field(default_factory=time.time)
    population_size: int = 0
    evaluations: int = 0
    best_accuracy: float = 0.0
    avg_accuracy: float = 0.0
    avg_token_cost: float = 0.0
    pareto_front_size: int = 0
    survivor_ids: List[str] = Field(default_factory=list)
    # Children admitted to the next population, not all that were proposed
    mutations: int = 0
    crossovers: int = 0


class OptimizationResult(BaseModel):
    """Final report from an optimization run.

    ``best_variants`` is the Pareto front of the final population.
    ``archive`` holds every variant created during the run, keyed by id,
    so lineage can be walked and the best-ever front recovered.
    """

    best_variants: List[PromptVariant] = Field(default_factory=list)
    best_accuracy: float = 0.0
    final_population: List[PromptVariant] = Field(default_factory=list)
    generations_run: int = 0
    total_evaluations: int = 0
    history: List[GenerationSummary] = Field(default_factory=list)
    archive: Dict[str, PromptVariant] = Field(default_factory=dict)
    stop_reason: str = "generations_exhausted"
    duration_s: float = 0.0

    def archive_front(self, objectives: ObjectivesLike = None) -> List[PromptVariant]:
        """Pareto front over every variant evaluated during the run."""
        return pareto_front(self.archive.values(), objectives)

    def lineage(self, variant_id: str) -> List[PromptVariant]:
        """Ancestors of a variant, nearest first. Shared ancestors appear once."""
        ancestors: List[PromptVariant] = []
        seen = {variant_id}
        start = self.archive.get(variant_id)
        queue = list(start.parents) if start else []
        while queue:
            pid = queue.pop(0)
            if pid in seen:
                continue
            seen.add(pid)
            parent = self.archive.get(pid)
            if parent is None:
                continue
            ancestors.append(parent)
            queue.extend(parent.parents)
        return ancestors
