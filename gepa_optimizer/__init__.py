# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""gepa-optimizer: Genetic-Pareto prompt evolution.

Usage:
    result = await optimize("Answer: {{input}}", tasks, runner=my_runner)
    print(result.best_accuracy)
"""
from gepa_optimizer.config import (
    MAX_GENERATIONS, MAX_MUTATION_COUNT, MAX_POPULATION_SIZE,
    OptimizerConfig, build_config,
)
from gepa_optimizer.errors import (
    ConfigurationError, GEPAError, InvalidTask, InvalidVariant,
    ReflectionError, RunnerError,
)
from gepa_optimizer.evaluator import Evaluator, evaluate_variant, format_evaluation_report
from gepa_optimizer.models import (
    EvaluationResult, GenerationSummary, OptimizationResult, RunnerResponse, TaskResult,
)
from gepa_optimizer.optimizer import (
    GEPAOptimizer, best_variants, format_optimization_report, optimize,
)
from gepa_optimizer.reflector import Reflector, parse_mutations
from gepa_optimizer.selection import (
    Direction, SelectionStrategy, crowding_distance, default_objectives,
    dominates, non_dominated_sort, pareto_front, select_survivors,
)
from gepa_optimizer.task import Task, from_input, from_pairs
from gepa_optimizer.telemetry import TelemetryBus, TelemetryEvent, TelemetryEventType
from gepa_optimizer.variant import PromptVariant

__version__ = "0.1.0"
__all__ = [
    "Task", "from_input", "from_pairs", "PromptVariant",
    "Evaluator", "evaluate_variant", "format_evaluation_report",
    "Reflector", "parse_mutations",
    "Direction", "SelectionStrategy", "default_objectives",
    "dominates", "pareto_front", "non_dominated_sort", "crowding_distance", "select_survivors",
    "GEPAOptimizer", "optimize", "best_variants", "format_optimization_report",
    "OptimizerConfig", "build_config",
    "MAX_GENERATIONS", "MAX_POPULATION_SIZE", "MAX_MUTATION_COUNT",
    "RunnerResponse", "TaskResult", "EvaluationResult", "GenerationSummary", "OptimizationResult",
    "TelemetryBus", "TelemetryEvent", "TelemetryEventType",
    "GEPAError", "ConfigurationError", "InvalidTask", "InvalidVariant",
    "RunnerError", "ReflectionError",
    "__version__",
]
