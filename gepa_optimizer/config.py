# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Optimizer configuration.

Can be created directly, from a dict, or by overriding an existing config
with keyword arguments. Every path goes through the same checks and raises
ConfigurationError before any evaluation starts.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gepa_optimizer.errors import ConfigurationError
from gepa_optimizer.runner import accepts_three_args, validate_runner
from gepa_optimizer.selection import (
    Objective, SelectionStrategy, default_objectives, normalize_objectives,
)

logger = logging.getLogger(__name__)

# Upper bounds that keep a single run from exhausting resources
MAX_GENERATIONS = 1000
MAX_POPULATION_SIZE = 100
MAX_MUTATION_COUNT = 20

_LIMITS = (
    ("generations", MAX_GENERATIONS, "generations_exceeds_max"),
    ("population_size", MAX_POPULATION_SIZE, "population_size_exceeds_max"),
    ("mutation_count", MAX_MUTATION_COUNT, "mutation_count_exceeds_max"),
)


class OptimizerConfig(BaseModel):
    """Configuration for the generational loop."""

    model_config = ConfigDict(extra="forbid")

    runner: Callable[..., Any]
    reflection_runner: Optional[Callable[..., Any]] = None

    generations: int = Field(10, ge=0, le=MAX_GENERATIONS)
    population_size: int = Field(8, ge=1, le=MAX_POPULATION_SIZE)
    mutation_count: int = Field(3, ge=0, le=MAX_MUTATION_COUNT)
    crossover_rate: float = Field(0.2, ge=0.0, le=1.0)
    crossover_children: int = Field(2, ge=0, le=MAX_MUTATION_COUNT)

    # Selection
    objectives: List[Objective] = Field(default_factory=default_objectives)
    strategy: SelectionStrategy = SelectionStrategy.PARETO_FIRST
    weights: Optional[Dict[str, float]] = None

    # Runner calls
    runner_opts: Dict[str, Any] = Field(default_factory=dict)
    task_timeout_s: Optional[float] = Field(30.0, gt=0)
    reflection_timeout_s: Optional[float] = Field(60.0, gt=0)
    parallel: bool = True
    max_concurrency: int = Field(4, ge=1)

    # Reproducibility and early stopping
    seed: Optional[int] = None
    target_accuracy: Optional[float] = Field(None, ge=0.0, le=1.0)
    deadline_s: Optional[float] = Field(None, gt=0)

    @field_validator("objectives", mode="before")
    @classmethod
    def _check_objectives(cls, value: Any) -> List[Objective]:
        return normalize_objectives(value)

    @field_validator("runner", "reflection_runner")
    @classmethod
    def _check_runner(cls, value: Any) -> Any:
        if value is not None and not accepts_three_args(value):
            raise ValueError("runner must take (prompt, task_input, runner_opts)")
        return value

    @property
    def survivor_count(self) -> int:
        return max(2, self.population_size // 2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizerConfig":
        """Validate a plain options dict into a config."""
        validate_runner(data.get("runner"))
        if data.get("reflection_runner") is not None:
            validate_runner(data["reflection_runner"], name="reflection_runner")

        for key, limit, reason in _LIMITS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > limit:
                raise ConfigurationError(
                    reason, "{} must be <= {} (got {})".format(key, limit, value),
                )

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError("invalid_config", str(e)) from e


def build_config(
    config: Union[OptimizerConfig, Dict[str, Any], None] = None,
    **overrides: Any,
) -> OptimizerConfig:
    """Merge a base config (object or dict) with keyword overrides."""
    if config is None:
        data: Dict[str, Any] = {}
    elif isinstance(config, OptimizerConfig):
        data = dict(config)
    elif isinstance(config, dict):
        data = dict(config)
    else:
        raise ConfigurationError("invalid_config", "config must be an OptimizerConfig or dict")

    data.update(overrides)
    return OptimizerConfig.from_dict(data)
