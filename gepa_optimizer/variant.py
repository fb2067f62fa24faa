# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""PromptVariant: a candidate template plus lineage and measured metrics.

Lineage is a DAG of ids: a seed has no parents, a mutation has one and a
crossover child has two. Variants never hold references to other variants,
only their ids; the optimizer keeps the id-to-variant table.
"""
import hashlib
import json
import math
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from gepa_optimizer.errors import InvalidVariant
from gepa_optimizer.templates import Template, render_template

# Metrics where a larger value is better; everything else is lower-is-better.
HIGHER_IS_BETTER = {"accuracy"}


def _generate_id() -> str:
    return "pv_{}".format(uuid.uuid4().hex[:12])


def _valid_template(template: Any) -> bool:
    if isinstance(template, str):
        return len(template) > 0
    if isinstance(template, dict):
        return len(template) > 0
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp_accuracy(value: Any) -> Optional[float]:
    if not _is_number(value) or math.isnan(value):
        return None
    return max(0.0, min(1.0, float(value)))


def _round_non_negative(value: Any) -> Optional[int]:
    if not _is_number(value) or math.isnan(value) or math.isinf(value):
        return None
    return int(round(max(0, value)))


class PromptVariant(BaseModel):
    """A prompt template under evolution."""

    id: str = Field(default_factory=_generate_id)
    template: Template
    generation: int = Field(0, ge=0)
    parents: List[str] = Field(default_factory=list)
    accuracy: Optional[float] = None
    token_cost: Optional[int] = None
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("template")
    @classmethod
    def _check_template(cls, value: Any) -> Any:
        if not _valid_template(value):
            raise ValueError("template must be a non-empty string or map")
        return value

    @classmethod
    def new(cls, attrs: Dict[str, Any]) -> "PromptVariant":
        """Build an unevaluated variant, raising InvalidVariant on bad input.

        Metric fields in ``attrs`` are ignored; use update_metrics().
        """
        if not isinstance(attrs, dict) or "template" not in attrs:
            raise InvalidVariant("template_required", "template is required")
        if not _valid_template(attrs["template"]):
            raise InvalidVariant(
                "invalid_template", "template must be a non-empty string or map",
            )

        data = {
            k: v for k, v in attrs.items()
            if k not in ("accuracy", "token_cost", "latency_ms")
        }
        if data.get("id") is None:
            data.pop("id", None)
        try:
            return cls(**data)
        except ValidationError as e:
            raise InvalidVariant("invalid_template", str(e)) from e

    @property
    def evaluated(self) -> bool:
        return self.accuracy is not None and self.token_cost is not None

    @property
    def mutation_type(self) -> str:
        return str(self.metadata.get("mutation_type", "seed" if not self.parents else "mutation"))

    def update_metrics(
        self,
        accuracy: Any = None,
        token_cost: Any = None,
        latency_ms: Any = None,
    ) -> "PromptVariant":
        """Record evaluation metrics in place.

        Accuracy is clamped to [0, 1]; cost and latency are rounded to
        non-negative integers. Non-numeric values leave the metric unset.
        """
        self.accuracy = _clamp_accuracy(accuracy)
        self.token_cost = _round_non_negative(token_cost)
        self.latency_ms = _round_non_negative(latency_ms)
        return self

    def metric(self, name: str) -> Optional[float]:
        """Value of a named metric; custom metrics are read from metadata."""
        if name in ("accuracy", "token_cost", "latency_ms"):
            return getattr(self, name)
        value = self.metadata.get(name)
        return value if _is_number(value) else None

    def compare(self, other: "PromptVariant", metric: str) -> str:
        """Return ``gt``, ``lt`` or ``eq``; ``gt`` means self is better."""
        a = self.metric(metric)
        b = other.metric(metric)
        if a is None or b is None or a == b:
            return "eq"
        if metric in HIGHER_IS_BETTER:
            return "gt" if a > b else "lt"
        return "gt" if a < b else "lt"

    def create_child(
        self,
        template: Template,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "PromptVariant":
        """Mutation child: next generation, this variant as sole parent."""
        child_meta: Dict[str, Any] = {"mutation_type": "mutation"}
        child_meta.update(self.metadata.get("inherited", {}))
        if metadata:
            child_meta.update(metadata)
        return PromptVariant.new({
            "template": template,
            "generation": self.generation + 1,
            "parents": [self.id],
            "metadata": child_meta,
        })

    @classmethod
    def crossover_child(
        cls,
        parent_a: "PromptVariant",
        parent_b: "PromptVariant",
        template: Template,
    ) -> "PromptVariant":
        """Crossover child with both parents in its lineage."""
        return cls.new({
            "template": template,
            "generation": max(parent_a.generation, parent_b.generation) + 1,
            "parents": [parent_a.id, parent_b.id],
            "metadata": {"mutation_type": "crossover"},
        })

    def render(self, task_input: Any) -> Template:
        return render_template(self.template, task_input)

    def content_hash(self) -> str:
        """Short hash of the template content for dedup."""
        if isinstance(self.template, dict):
            raw = json.dumps(self.template, sort_keys=True, default=str)
        else:
            raw = self.template
        return hashlib.sha256(raw.encode()).hexdigest()[:12]
