# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Optimizer: the generational loop that evolves a prompt template.

Flow:
  1. Validate config (runner shape, generation/population/mutation bounds)
  2. Seed variant + initial mutations proposed from the unevaluated seed
  3. For each generation:
     a. Evaluate variants that have no metrics yet (concurrently, bounded)
     b. Select survivors (half the population) by Pareto strategy
     c. Reflect on each survivor's failures and propose mutations
     d. With probability crossover_rate, cross pairs of survivors
     e. Next population = survivors + children, deduped, padded/truncated
  4. Output: Pareto front of the final population + run report

Runner and reflection failures degrade a score or skip a mutation; they
never abort a generation. The only exceptions optimize() raises are
pre-flight validation errors.
"""
import asyncio
import logging
import random
import time
from itertools import zip_longest
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from gepa_optimizer.config import OptimizerConfig, build_config
from gepa_optimizer.evaluator import Evaluator, aggregate_results, failed_evaluation
from gepa_optimizer.models import (
    EvaluationResult, GenerationSummary, OptimizationResult, TaskResult,
)
from gepa_optimizer.reflector import Reflector
from gepa_optimizer.selection import ObjectivesLike, pareto_front, select_survivors
from gepa_optimizer.task import Task
from gepa_optimizer.telemetry import TelemetryBus, TelemetryEventType
from gepa_optimizer.templates import Template
from gepa_optimizer.variant import PromptVariant

logger = logging.getLogger(__name__)

INITIAL_REFLECTION = (
    "The prompt has not been evaluated yet. Propose diverse variations that "
    "make the instructions clearer and more specific while staying concise."
)

StopCheck = Callable[[], bool]
TaskLike = Union[Task, Dict[str, Any], str]


def _coerce_task(task: TaskLike) -> Task:
    if isinstance(task, Task):
        return task
    if isinstance(task, str):
        return Task.new({"input": task})
    return Task.new(task)


def _count_entered(batches: List[List[PromptVariant]], entered: Set[str]) -> int:
    return sum(1 for batch in batches for v in batch if v.id in entered)


class GEPAOptimizer:
    """Evolves prompt templates against a task set.

    Usage:
        optimizer = GEPAOptimizer(runner=my_runner, generations=5)
        result = await optimizer.optimize("Answer: {{input}}", tasks)
        print(result.best_accuracy, result.best_variants[0].template)
    """

    def __init__(
        self,
        config: Union[OptimizerConfig, Dict[str, Any], None] = None,
        telemetry: Optional[TelemetryBus] = None,
        **overrides: Any,
    ):
        self._config = build_config(config, **overrides)
        self._telemetry = telemetry if telemetry is not None else TelemetryBus()
        self._rng = random.Random(self._config.seed)

        cfg = self._config
        self._evaluator = Evaluator(
            cfg.runner,
            timeout_s=cfg.task_timeout_s,
            runner_opts=cfg.runner_opts,
        )
        self._reflector = Reflector(
            cfg.reflection_runner or cfg.runner,
            mutation_count=cfg.mutation_count,
            children_count=cfg.crossover_children,
            runner_opts=cfg.runner_opts,
            timeout_s=cfg.reflection_timeout_s,
        )

        self._archive: Dict[str, PromptVariant] = {}
        self._eval_results: Dict[str, EvaluationResult] = {}
        self._history: List[GenerationSummary] = []
        self._evaluations = 0

    @property
    def config(self) -> OptimizerConfig:
        return self._config

    @property
    def telemetry(self) -> TelemetryBus:
        return self._telemetry

    @property
    def history(self) -> List[GenerationSummary]:
        return list(self._history)

    async def optimize(
        self,
        template: Template,
        tasks: Iterable[TaskLike],
        should_stop: Optional[StopCheck] = None,
    ) -> OptimizationResult:
        """Run the full loop from a seed template.

        ``should_stop`` is polled between generations; returning True ends
        the run early with ``stop_reason="stopped"``.
        """
        cfg = self._config
        task_list = [_coerce_task(t) for t in tasks]
        seed = PromptVariant.new({
            "template": template,
            "generation": 0,
            "metadata": {"mutation_type": "seed"},
        })

        self._archive = {}
        self._eval_results = {}
        self._history = []
        self._evaluations = 0
        started = time.monotonic()

        logger.info(
            "Optimizing over %d tasks: %d generations, population %d, strategy %s",
            len(task_list), cfg.generations, cfg.population_size, cfg.strategy.value,
        )

        population = await self._initialize_population(seed)
        generations_run = 0
        stop_reason = "generations_exhausted"

        for gen in range(cfg.generations):
            reason = self._check_stop(started, should_stop)
            if reason:
                stop_reason = reason
                logger.info("Stopping before generation %d: %s", gen, reason)
                break

            population = await self.run_generation(population, task_list, gen)
            generations_run += 1

            if (
                cfg.target_accuracy is not None
                and self._history
                and self._history[-1].best_accuracy >= cfg.target_accuracy
            ):
                stop_reason = "target_reached"
                logger.info("Stopping: target accuracy %.2f reached", cfg.target_accuracy)
                break

        best = self.best_variants(population)
        best_accuracy = max((v.accuracy for v in best), default=0.0)

        self._telemetry.emit(
            TelemetryEventType.COMPLETE,
            {
                "total_generations": generations_run,
                "total_evaluations": self._evaluations,
                "best_accuracy": best_accuracy,
            },
            {
                "best_variant_id": best[0].id if best else None,
                "pareto_front_size": len(best),
                "stop_reason": stop_reason,
            },
        )

        result = OptimizationResult(
            best_variants=best,
            best_accuracy=best_accuracy,
            final_population=population,
            generations_run=generations_run,
            total_evaluations=self._evaluations,
            history=list(self._history),
            archive=dict(self._archive),
            stop_reason=stop_reason,
            duration_s=round(time.monotonic() - started, 3),
        )
        logger.info(
            "Optimization finished after %d generations (%s): best accuracy %.3f, %d evaluations",
            generations_run, stop_reason, best_accuracy, self._evaluations,
        )
        return result

    async def run_generation(
        self,
        population: List[PromptVariant],
        tasks: List[Task],
        generation: int,
    ) -> List[PromptVariant]:
        """Evaluate, select, breed. Returns the next population."""
        cfg = self._config
        logger.info("=== Generation %d (%d variants) ===", generation, len(population))

        for v in population:
            self._archive.setdefault(v.id, v)

        evaluations = await self._evaluate_population(population, tasks, generation)

        survivors = select_survivors(
            population, cfg.survivor_count,
            objectives=cfg.objectives, strategy=cfg.strategy, weights=cfg.weights,
        )

        mutation_batches = await self._mutate_survivors(survivors, generation)
        crossover_batches = await self._crossover_survivors(survivors, generation)

        # Crossover children lead each round so mutations cannot crowd them out
        next_population = self._assemble(
            survivors, crossover_batches + mutation_batches, population,
        )
        entered = {v.id for v in next_population}

        summary = self._summarize(population, generation)
        summary.evaluations = evaluations
        summary.survivor_ids = [v.id for v in survivors]
        summary.mutations = _count_entered(mutation_batches, entered)
        summary.crossovers = _count_entered(crossover_batches, entered)
        self._history.append(summary)

        self._telemetry.emit(
            TelemetryEventType.GENERATION,
            {
                "best_accuracy": summary.best_accuracy,
                "avg_accuracy": summary.avg_accuracy,
                "avg_token_cost": summary.avg_token_cost,
                "pareto_front_size": summary.pareto_front_size,
            },
            {"generation": generation, "population_size": len(population)},
        )
        logger.info(
            "Generation %d: best %.3f avg %.3f, front %d, %d survivors, %d children",
            generation, summary.best_accuracy, summary.avg_accuracy,
            summary.pareto_front_size, len(survivors),
            summary.mutations + summary.crossovers,
        )

        keep = {v.id for v in next_population}
        self._eval_results = {k: r for k, r in self._eval_results.items() if k in keep}
        return next_population

    def best_variants(
        self,
        population: Iterable[PromptVariant],
        objectives: ObjectivesLike = None,
    ) -> List[PromptVariant]:
        """Pareto front of the given population."""
        return pareto_front(population, objectives or self._config.objectives)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _initialize_population(self, seed: PromptVariant) -> List[PromptVariant]:
        cfg = self._config
        self._archive[seed.id] = seed
        count = min(cfg.population_size - 1, cfg.mutation_count)
        if count <= 0:
            return [seed]

        try:
            templates = await self._reflector.propose_mutations(seed, INITIAL_REFLECTION, count)
        except Exception as e:
            logger.warning("Initial mutations failed, starting from seed only: %s", e)
            return [seed]

        children = [seed.create_child(t) for t in templates]
        self._emit_mutation(seed, len(children), "mutation")
        return self._assemble([seed], [children], [])

    async def _evaluate_population(
        self,
        population: List[PromptVariant],
        tasks: List[Task],
        generation: int,
    ) -> int:
        """Evaluate variants lacking metrics. Returns how many were evaluated.

        Runner calls for every pending (variant, task) pair share one
        semaphore, so at most ``max_concurrency`` run at once.
        """
        cfg = self._config
        pending = [v for v in population if not v.evaluated]
        if not pending:
            return 0

        semaphore = asyncio.Semaphore(cfg.max_concurrency if cfg.parallel else 1)

        async def _task(variant: PromptVariant, task: Task) -> TaskResult:
            async with semaphore:
                return await self._evaluator.run_single_task(variant, task)

        async def _one(variant: PromptVariant) -> EvaluationResult:
            results = await asyncio.gather(
                *(_task(variant, t) for t in tasks), return_exceptions=True,
            )
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                logger.warning("Evaluation failed for variant %s: %s", variant.id, errors[0])
                return failed_evaluation(variant.id, tasks, "exception: {}".format(errors[0]))
            return aggregate_results(variant.id, list(results))

        results = await asyncio.gather(*(_one(v) for v in pending))

        # Merge only after every evaluation has finished
        for variant, result in zip(pending, results):
            variant.update_metrics(
                accuracy=result.accuracy,
                token_cost=result.token_cost,
                latency_ms=result.latency_ms,
            )
            self._eval_results[variant.id] = result
            self._archive[variant.id] = variant
            self._telemetry.emit(
                TelemetryEventType.EVALUATION,
                {
                    "accuracy": variant.accuracy,
                    "token_cost": variant.token_cost,
                    "latency_ms": variant.latency_ms or 0,
                },
                {"variant_id": variant.id, "generation": generation},
            )

        self._evaluations += len(pending)
        return len(pending)

    async def _mutate_survivors(
        self,
        survivors: List[PromptVariant],
        generation: int,
    ) -> List[List[PromptVariant]]:
        cfg = self._config
        if cfg.mutation_count <= 0 or not survivors:
            return [[] for _ in survivors]

        semaphore = asyncio.Semaphore(cfg.max_concurrency if cfg.parallel else 1)

        async def _one(survivor: PromptVariant) -> List[PromptVariant]:
            eval_result = self._eval_results.get(survivor.id) or EvaluationResult(
                variant_id=survivor.id,
            )
            async with semaphore:
                try:
                    return await self._reflector.mutate_prompt(survivor, eval_result)
                except Exception as e:
                    logger.warning("Mutation failed for variant %s: %s", survivor.id, e)
                    return []

        batches = list(await asyncio.gather(*(_one(s) for s in survivors)))
        for survivor, children in zip(survivors, batches):
            self._emit_mutation(survivor, len(children), "mutation", generation)
        return batches

    async def _crossover_survivors(
        self,
        survivors: List[PromptVariant],
        generation: int,
    ) -> List[List[PromptVariant]]:
        """One batch of hybrid children per crossed pair."""
        cfg = self._config
        if cfg.crossover_rate <= 0 or cfg.crossover_children <= 0 or len(survivors) < 2:
            return []

        shuffled = list(survivors)
        self._rng.shuffle(shuffled)
        pairs = []
        for i in range(0, len(shuffled) - 1, 2):
            if self._rng.random() < cfg.crossover_rate:
                pairs.append((shuffled[i], shuffled[i + 1]))
        if not pairs:
            return []

        semaphore = asyncio.Semaphore(cfg.max_concurrency if cfg.parallel else 1)

        async def _one(parent_a: PromptVariant, parent_b: PromptVariant) -> List[PromptVariant]:
            async with semaphore:
                try:
                    return await self._reflector.crossover(parent_a, parent_b)
                except Exception as e:
                    logger.warning(
                        "Crossover failed for %s x %s: %s", parent_a.id, parent_b.id, e,
                    )
                    return []

        batches = list(await asyncio.gather(*(_one(a, b) for a, b in pairs)))
        for (parent_a, parent_b), batch in zip(pairs, batches):
            self._telemetry.emit(
                TelemetryEventType.MUTATION,
                {"mutation_count": len(batch)},
                {
                    "parent_ids": [parent_a.id, parent_b.id],
                    "generation": generation,
                    "mutation_type": "crossover",
                },
            )
        return batches

    def _assemble(
        self,
        survivors: List[PromptVariant],
        batches: List[List[PromptVariant]],
        population: List[PromptVariant],
    ) -> List[PromptVariant]:
        """Survivors first, then children round-robin across batches.

        run_generation passes crossover batches ahead of mutation batches, so
        each round admits one hybrid per crossed pair before any mutation.

        Duplicate templates are dropped. Short populations are padded with
        the next-best evaluated variants of the current population.
        """
        size = self._config.population_size
        next_population: List[PromptVariant] = []
        seen_ids = set()
        seen_hashes = set()

        def _add(variant: PromptVariant) -> None:
            digest = variant.content_hash()
            if variant.id in seen_ids or digest in seen_hashes:
                return
            seen_ids.add(variant.id)
            seen_hashes.add(digest)
            next_population.append(variant)

        for v in survivors:
            _add(v)
        for group in zip_longest(*batches):
            for v in group:
                if v is not None:
                    _add(v)

        if len(next_population) < size and population:
            cfg = self._config
            for v in select_survivors(
                population, size,
                objectives=cfg.objectives, strategy=cfg.strategy, weights=cfg.weights,
            ):
                _add(v)

        next_population = next_population[:size]
        for v in next_population:
            self._archive.setdefault(v.id, v)
        return next_population

    def _summarize(self, population: List[PromptVariant], generation: int) -> GenerationSummary:
        evaluated = [v for v in population if v.evaluated]
        summary = GenerationSummary(generation=generation, population_size=len(population))
        if not evaluated:
            return summary

        accuracies = [v.accuracy for v in evaluated]
        summary.best_accuracy = max(accuracies)
        summary.avg_accuracy = round(sum(accuracies) / len(accuracies), 4)
        summary.avg_token_cost = round(
            sum(v.token_cost for v in evaluated) / len(evaluated), 2,
        )
        summary.pareto_front_size = len(pareto_front(evaluated, self._config.objectives))
        return summary

    def _check_stop(self, started: float, should_stop: Optional[StopCheck]) -> Optional[str]:
        deadline = self._config.deadline_s
        if deadline is not None and time.monotonic() - started >= deadline:
            return "deadline"
        if should_stop is not None and should_stop():
            return "stopped"
        return None

    def _emit_mutation(
        self,
        parent: PromptVariant,
        count: int,
        mutation_type: str,
        generation: Optional[int] = None,
    ) -> None:
        self._telemetry.emit(
            TelemetryEventType.MUTATION,
            {"mutation_count": count},
            {
                "parent_id": parent.id,
                "generation": parent.generation if generation is None else generation,
                "mutation_type": mutation_type,
            },
        )


async def optimize(
    template: Template,
    tasks: Iterable[TaskLike],
    config: Union[OptimizerConfig, Dict[str, Any], None] = None,
    telemetry: Optional[TelemetryBus] = None,
    should_stop: Optional[StopCheck] = None,
    **options: Any,
) -> OptimizationResult:
    """Convenience wrapper: build a GEPAOptimizer and run it once."""
    optimizer = GEPAOptimizer(config, telemetry=telemetry, **options)
    return await optimizer.optimize(template, tasks, should_stop=should_stop)


def best_variants(
    population: Iterable[PromptVariant],
    objectives: ObjectivesLike = None,
) -> List[PromptVariant]:
    """Pareto front of whatever population is passed, for mid-run inspection."""
    return pareto_front(population, objectives)


def format_optimization_report(result: OptimizationResult) -> str:
    """Format a human-readable optimization report."""
    lines = [
        "=" * 60,
        "Prompt Optimization Report",
        "=" * 60,
        "Generations: {}  Evaluations: {}  Duration: {:.1f}s  Stop: {}".format(
            result.generations_run, result.total_evaluations,
            result.duration_s, result.stop_reason,
        ),
        "Best accuracy: {:.1%}  Pareto front: {} variant(s)".format(
            result.best_accuracy, len(result.best_variants),
        ),
        "",
    ]

    for summary in result.history:
        lines.append("--- Generation {} ---".format(summary.generation))
        lines.append("Best: {:.1%}  Avg: {:.1%}  Avg tokens: {:.0f}  Front: {}".format(
            summary.best_accuracy, summary.avg_accuracy,
            summary.avg_token_cost, summary.pareto_front_size,
        ))
        lines.append("Evaluated: {}  Mutations: {}  Crossovers: {}".format(
            summary.evaluations, summary.mutations, summary.crossovers,
        ))
        lines.append("")

    for v in result.best_variants[:3]:
        lines.append("{} (gen {}): accuracy {:.1%}, {} tokens".format(
            v.id, v.generation, v.accuracy or 0.0, v.token_cost or 0,
        ))

    return "\n".join(lines)
