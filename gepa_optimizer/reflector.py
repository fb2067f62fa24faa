# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Reflector: LLM-guided mutation and crossover of prompt templates.

Flow for one mutation round:
  1. reflect_on_failures  sample failing tasks, ask the model why they failed
  2. propose_mutations    ask for N rewritten templates in ---MUTATION k--- blocks
  3. mutate_prompt        wrap each template in a child PromptVariant

Crossover asks the model to merge two parents into hybrid templates.

Output parsing never raises: if the delimiter blocks are missing, the reply
is split into paragraphs and anything that looks like a prompt is kept.
Runner failures surface as ReflectionError.
"""
import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from gepa_optimizer.errors import ReflectionError, RunnerError
from gepa_optimizer.models import EvaluationResult, TaskResult
from gepa_optimizer.runner import Runner, call_runner, validate_runner
from gepa_optimizer.templates import (
    Template, coerce_like, format_template, strip_code_fences, truncate,
)
from gepa_optimizer.variant import PromptVariant

logger = logging.getLogger(__name__)

DEFAULT_MUTATION_COUNT = 3
DEFAULT_CHILDREN_COUNT = 2
MAX_FAILURE_SAMPLES = 5
MAX_INPUT_CHARS = 300
MAX_OUTPUT_CHARS = 500

NO_FAILURES_REFLECTION = "No failures to analyze. The prompt performed well on all tasks."

_MUTATION_RE = re.compile(
    r"---\s*MUTATION\s+\d+\s*---\s*(.*?)(?=---\s*MUTATION\s+\d+\s*---|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_PARAGRAPH_RE = re.compile(r"\n{2,}")


class Reflector:
    """Proposes new templates by asking a reflection runner.

    Usage:
        reflector = Reflector(runner, mutation_count=3)
        children = await reflector.mutate_prompt(variant, eval_result)
    """

    def __init__(
        self,
        runner: Runner,
        mutation_count: int = DEFAULT_MUTATION_COUNT,
        children_count: int = DEFAULT_CHILDREN_COUNT,
        runner_opts: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ):
        self._runner = validate_runner(runner, name="reflection runner")
        self._mutation_count = mutation_count
        self._children_count = children_count
        self._runner_opts = dict(runner_opts or {})
        self._timeout_s = timeout_s

    async def reflect_on_failures(
        self,
        variant: PromptVariant,
        failing_results: Sequence[TaskResult],
    ) -> str:
        """Free-text analysis of why the variant failed."""
        if not failing_results:
            return NO_FAILURES_REFLECTION
        prompt = build_reflection_prompt(variant, list(failing_results))
        return (await self._ask(prompt)).strip()

    async def propose_mutations(
        self,
        variant: PromptVariant,
        reflection: str,
        count: Optional[int] = None,
    ) -> List[Template]:
        """Ask for ``count`` revised templates (default: mutation_count)."""
        count = self._mutation_count if count is None else count
        if count <= 0:
            return []
        prompt = build_mutation_prompt(variant, reflection, count)
        output = await self._ask(prompt)
        return [coerce_like(variant.template, t) for t in parse_mutations(output, count)]

    async def mutate_prompt(
        self,
        variant: PromptVariant,
        eval_result: EvaluationResult,
        count: Optional[int] = None,
    ) -> List[PromptVariant]:
        """Reflect on the variant's failures and return unevaluated children."""
        failures = [r for r in eval_result.results if not r.success]
        reflection = await self.reflect_on_failures(variant, failures)
        templates = await self.propose_mutations(variant, reflection, count)
        return [
            variant.create_child(t, {"reflection": truncate(reflection, MAX_OUTPUT_CHARS)})
            for t in templates
        ]

    async def crossover(
        self,
        variant_a: PromptVariant,
        variant_b: PromptVariant,
        count: Optional[int] = None,
    ) -> List[PromptVariant]:
        """Hybrid children that combine both parents."""
        count = self._children_count if count is None else count
        if count <= 0:
            return []
        prompt = build_crossover_prompt(variant_a, variant_b, count)
        output = await self._ask(prompt)
        return [
            PromptVariant.crossover_child(variant_a, variant_b, coerce_like(variant_a.template, t))
            for t in parse_mutations(output, count)
        ]

    async def _ask(self, prompt: str) -> str:
        try:
            response = await call_runner(
                self._runner, prompt, "", self._runner_opts, timeout_s=self._timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ReflectionError("timeout") from e
        except RunnerError as e:
            raise ReflectionError(e.detail) from e
        except Exception as e:
            raise ReflectionError("exception: {}".format(e)) from e
        return response.output


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

def _format_failure(index: int, result: TaskResult) -> str:
    if result.error is not None:
        output_text = "Error: {}".format(truncate(result.error, MAX_OUTPUT_CHARS))
    elif result.output:
        output_text = "Output: {}".format(truncate(result.output, MAX_OUTPUT_CHARS))
    else:
        output_text = "Output: (none)"

    return "### Failure {}\nInput: {}\n{}\n{}".format(
        index,
        truncate(result.task.input, MAX_INPUT_CHARS),
        result.task.criteria_description(),
        output_text,
    )


def _format_instructions(kind: str, count: int) -> str:
    blocks = "\n\n".join(
        "---MUTATION {}---\n[{}]".format(i, kind) for i in range(1, count + 1)
    )
    return "Format your response as:\n\n{}".format(blocks)


def _template_rules(variant: PromptVariant, kind: str) -> str:
    rules = [
        "- Keep the {{input}} placeholder for the task input",
        "- Each {} must be a complete, standalone prompt template".format(kind),
    ]
    if isinstance(variant.template, dict):
        rules.append("- Keep every ## section heading exactly as written; rewrite only the section bodies")
    return "\n".join(rules)


def build_reflection_prompt(variant: PromptVariant, failing_results: List[TaskResult]) -> str:
    sampled = failing_results[:MAX_FAILURE_SAMPLES]
    failures_text = "\n\n".join(
        _format_failure(i, r) for i, r in enumerate(sampled, 1)
    )
    return (
        "You are analyzing a prompt that failed on some tasks. "
        "Work out WHY it failed and what the failures have in common.\n\n"
        "## Current Prompt Template\n\n{}\n\n"
        "## Failed Tasks ({} of {} failures)\n\n{}\n\n"
        "## Analysis Request\n\n"
        "Identify:\n"
        "1. Common patterns in why the prompt failed\n"
        "2. Instructions the prompt is missing\n"
        "3. Specific weaknesses in the prompt's wording\n\n"
        "Keep the analysis to 2-4 paragraphs of actionable insights."
    ).format(
        format_template(variant.template), len(sampled), len(failing_results), failures_text,
    )


def build_mutation_prompt(variant: PromptVariant, reflection: str, count: int) -> str:
    return (
        "You are improving a prompt based on failure analysis.\n\n"
        "## Current Prompt Template\n\n{}\n\n"
        "## Failure Analysis\n\n{}\n\n"
        "## Mutation Request\n\n"
        "Generate exactly {} improved prompt templates, each addressing the issues "
        "differently (clarify instructions, restructure, add examples or emphasis).\n\n"
        "{}\n\nRules:\n{}"
    ).format(
        format_template(variant.template),
        reflection,
        count,
        _format_instructions("improved prompt template", count),
        _template_rules(variant, "mutation"),
    )


def build_crossover_prompt(variant_a: PromptVariant, variant_b: PromptVariant, count: int) -> str:
    return (
        "You are combining two successful prompts into hybrid versions.\n\n"
        "## Parent Prompt A\n\n{}\n\n"
        "## Parent Prompt B\n\n{}\n\n"
        "## Crossover Request\n\n"
        "Create {} hybrid prompt templates that merge the strongest phrasing, "
        "structure and constraints of both parents rather than concatenating them.\n\n"
        "{}\n\nRules:\n{}"
    ).format(
        format_template(variant_a.template),
        format_template(variant_b.template),
        count,
        _format_instructions("hybrid prompt template", count),
        _template_rules(variant_a, "hybrid"),
    )


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_mutations(output: str, expected_count: int) -> List[str]:
    """Extract up to ``expected_count`` templates from a reflection reply."""
    blocks = [strip_code_fences(m) for m in _MUTATION_RE.findall(output or "")]
    blocks = [b for b in blocks if len(b) > 10]
    if blocks:
        return blocks[:expected_count]

    logger.debug("No ---MUTATION--- blocks in reply, falling back to paragraph split")
    return _fallback_parse(output or "", expected_count)


def _looks_like_prompt(text: str) -> bool:
    return len(text) > 20 and not text.startswith("#") and not text.startswith("```")


def _fallback_parse(output: str, expected_count: int) -> List[str]:
    paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(output)]
    return [p for p in paragraphs if _looks_like_prompt(p)][:expected_count]
