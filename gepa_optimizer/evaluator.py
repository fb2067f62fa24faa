# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluator: run a prompt variant against a task set.

Each task renders the variant's template with the task input, calls the
runner, and checks the output against the task's success criteria. Runner
errors, exceptions and timeouts are recorded on the task result; they never
abort the evaluation.

Aggregates:
  accuracy    successful tasks / total tasks (0.0 for an empty set)
  token_cost  sum of reported tokens (missing counts as 0)
  latency_ms  mean wall-clock time per task
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from gepa_optimizer.errors import RunnerError
from gepa_optimizer.models import EvaluationResult, TaskResult
from gepa_optimizer.runner import Runner, call_runner, validate_runner
from gepa_optimizer.task import Task
from gepa_optimizer.templates import truncate
from gepa_optimizer.variant import PromptVariant

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT_S = 30.0
DEFAULT_MAX_CONCURRENCY = 4


class Evaluator:
    """Scores prompt variants through an injected runner.

    Usage:
        evaluator = Evaluator(runner, parallel=True)
        result = await evaluator.evaluate_variant(variant, tasks)
        print(result.accuracy, result.token_cost)
    """

    def __init__(
        self,
        runner: Runner,
        timeout_s: Optional[float] = DEFAULT_TASK_TIMEOUT_S,
        parallel: bool = False,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        runner_opts: Optional[Dict[str, Any]] = None,
    ):
        self._runner = validate_runner(runner)
        self._timeout_s = timeout_s
        self._parallel = parallel
        self._max_concurrency = max(1, max_concurrency)
        self._runner_opts = dict(runner_opts or {})

    async def evaluate_variant(
        self,
        variant: PromptVariant,
        tasks: Sequence[Task],
    ) -> EvaluationResult:
        """Run every task and aggregate the metrics.

        Does not touch the variant; apply the result with update_metrics().
        """
        tasks = list(tasks)
        if self._parallel and len(tasks) > 1:
            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _bounded(task: Task) -> TaskResult:
                async with semaphore:
                    return await self.run_single_task(variant, task)

            results = list(await asyncio.gather(*(_bounded(t) for t in tasks)))
        else:
            results = [await self.run_single_task(variant, t) for t in tasks]

        return aggregate_results(variant.id, results)

    async def run_single_task(self, variant: PromptVariant, task: Task) -> TaskResult:
        """Run one task. Never raises for runner failures."""
        start = time.monotonic()
        prompt = variant.render(task.input)
        error: Any = None
        output: Optional[str] = None
        tokens = 0

        try:
            response = await call_runner(
                self._runner, prompt, task.input, self._runner_opts,
                timeout_s=self._timeout_s,
            )
            output = response.output
            tokens = response.tokens
        except asyncio.TimeoutError:
            logger.warning(
                "Task %s timed out after %ss (variant %s)",
                task.id, self._timeout_s, variant.id,
            )
            error = "timeout"
        except RunnerError as e:
            logger.warning("Runner error on task %s (variant %s): %s", task.id, variant.id, e)
            error = e.detail
        except Exception as e:
            logger.warning("Runner raised on task %s (variant %s): %s", task.id, variant.id, e)
            error = "exception: {}".format(e)

        latency_ms = max(0.0, (time.monotonic() - start) * 1000.0)

        if error is not None:
            return TaskResult(task=task, success=False, latency_ms=latency_ms, error=error)

        return TaskResult(
            task=task,
            success=task.is_success(output),
            output=output,
            tokens=tokens,
            latency_ms=latency_ms,
        )


def aggregate_results(variant_id: str, results: List[TaskResult]) -> EvaluationResult:
    """Fold per-task results into variant-level metrics."""
    if not results:
        return EvaluationResult(variant_id=variant_id)

    n = len(results)
    successes = sum(1 for r in results if r.success)
    return EvaluationResult(
        variant_id=variant_id,
        accuracy=round(successes / n, 4),
        token_cost=sum(r.tokens or 0 for r in results),
        latency_ms=round(sum(r.latency_ms for r in results) / n, 2),
        results=results,
    )


def failed_evaluation(variant_id: str, tasks: Sequence[Task], error: Any) -> EvaluationResult:
    """Result for an evaluation that crashed outright: every task failed with ``error``."""
    return aggregate_results(
        variant_id,
        [TaskResult(task=t, success=False, error=error) for t in tasks],
    )


async def evaluate_variant(
    variant: PromptVariant,
    tasks: Sequence[Task],
    runner: Runner,
    **options: Any,
) -> EvaluationResult:
    """One-shot helper: ``Evaluator(runner, **options).evaluate_variant(...)``."""
    return await Evaluator(runner, **options).evaluate_variant(variant, tasks)


def format_evaluation_report(variant: PromptVariant, result: EvaluationResult) -> str:
    """Human-readable summary with the per-task breakdown."""
    lines = [
        "Variant: {} (gen {}, {})".format(
            variant.id, variant.generation, variant.mutation_type,
        ),
        "  Accuracy: {:.1%}  Tokens: {}  Avg latency: {:.0f}ms".format(
            result.accuracy, result.token_cost, result.latency_ms,
        ),
    ]

    failed = result.failures
    if failed:
        lines.append("  Failed tasks ({}/{}):".format(len(failed), len(result.results)))
        for r in failed[:5]:
            detail = "error: {}".format(r.error) if r.error is not None else truncate(r.output, 80)
            lines.append("    - {} [{}] {}".format(
                r.task.id, truncate(r.task.input, 60), detail,
            ))

    return "\n".join(lines)
