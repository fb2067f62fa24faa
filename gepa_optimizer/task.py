# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Evaluation tasks: one input plus the rule that decides success.

Success rule, in order of precedence:
  1. ``validator(output)`` if a validator is set
  2. case-insensitive, whitespace-normalized substring match of ``expected``
  3. no criteria at all, so every output succeeds

Validators run arbitrary code against model output. Only attach validators
that come from trusted code, never from user input or deserialized data.
"""
import logging
import re
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gepa_optimizer.errors import InvalidTask

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

Validator = Callable[[str], bool]


def _generate_id() -> str:
    return "task_{}".format(uuid.uuid4().hex[:12])


def _is_empty_input(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple, set)):
        return len(value) == 0
    return False


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", text.lower().strip())


class Task(BaseModel):
    """A single evaluation case. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_generate_id)
    input: Any
    expected: Optional[str] = None
    validator: Optional[Validator] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("input")
    @classmethod
    def _check_input(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("input is required")
        if _is_empty_input(value):
            raise ValueError("input cannot be empty")
        return value

    @classmethod
    def new(cls, attrs: Dict[str, Any]) -> "Task":
        """Build a Task from a dict, raising InvalidTask on bad input."""
        if not isinstance(attrs, dict):
            raise InvalidTask("invalid_attrs", "attrs must be a dict")
        if attrs.get("input") is None:
            raise InvalidTask("input_required", "input is required")
        if _is_empty_input(attrs["input"]):
            raise InvalidTask("empty_input", "input cannot be empty")

        data = dict(attrs)
        if data.get("id") is None:
            data.pop("id", None)
        try:
            return cls(**data)
        except ValidationError as e:
            raise InvalidTask("invalid_attrs", str(e)) from e

    def is_success(self, output: Optional[str]) -> bool:
        """Check ``output`` against this task's success criteria."""
        if self.validator is not None:
            try:
                return bool(self.validator(output))
            except Exception as e:
                logger.debug("Validator raised for task %s: %s", self.id, e)
                return False

        if self.expected is not None:
            if not isinstance(output, str):
                return False
            return normalize_text(self.expected) in normalize_text(output)

        return True

    def criteria_description(self) -> str:
        if self.validator is not None:
            return "Validator: custom function"
        if self.expected is not None:
            return "Expected: {}".format(self.expected)
        return "No explicit criteria"


def from_input(text: str) -> Task:
    """Task with no success criteria, for exploratory runs."""
    return Task.new({"input": text})


def from_pairs(pairs: Iterable[Tuple[str, str]]) -> List[Task]:
    """Build tasks from ``(input, expected)`` pairs."""
    return [Task.new({"input": inp, "expected": expected}) for inp, expected in pairs]
