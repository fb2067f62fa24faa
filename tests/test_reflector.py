# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for reflection, mutation proposal, crossover and output parsing."""
import pytest

from gepa_optimizer.errors import ConfigurationError, ReflectionError
from gepa_optimizer.models import EvaluationResult, TaskResult
from gepa_optimizer.reflector import (
    NO_FAILURES_REFLECTION, Reflector, build_crossover_prompt, build_mutation_prompt,
    build_reflection_prompt, parse_mutations,
)
from gepa_optimizer.task import Task
from gepa_optimizer.variant import PromptVariant

TWO_MUTATIONS = (
    "---MUTATION 1---\n"
    "Answer the question step by step: {{input}}\n\n"
    "---MUTATION 2---\n"
    "```\nThink carefully, then give only the final answer: {{input}}\n```\n"
)


class ScriptedRunner:
    """Answers by prompt kind and records every prompt it sees."""

    def __init__(self, reflection="The prompt never asks for a final answer.", mutations=TWO_MUTATIONS):
        self.reflection = reflection
        self.mutations = mutations
        self.prompts = []

    def __call__(self, prompt, task_input, opts):
        self.prompts.append(prompt)
        if prompt.startswith("You are analyzing"):
            return self.reflection
        return self.mutations


def failing_result(variant_id="pv_x"):
    task = Task.new({"input": "2+2", "expected": "4"})
    return EvaluationResult(
        variant_id=variant_id,
        accuracy=0.0,
        results=[TaskResult(task=task, success=False, output="five")],
    )


# =====================================================================
# Parsing
# =====================================================================

class TestParseMutations:
    def test_delimited_blocks(self):
        parsed = parse_mutations(TWO_MUTATIONS, 3)
        assert parsed == [
            "Answer the question step by step: {{input}}",
            "Think carefully, then give only the final answer: {{input}}",
        ]

    def test_caps_at_expected_count(self):
        assert len(parse_mutations(TWO_MUTATIONS, 1)) == 1

    def test_short_blocks_dropped(self):
        output = "---MUTATION 1---\nshort\n---MUTATION 2---\nThis one is long enough to keep"
        assert parse_mutations(output, 2) == ["This one is long enough to keep"]

    def test_fallback_paragraphs(self):
        output = (
            "# Improved prompts\n\n"
            "Please solve the following problem carefully: {{input}}\n\n"
            "ok\n\n"
            "Read the task, reason briefly, then answer: {{input}}"
        )
        assert parse_mutations(output, 5) == [
            "Please solve the following problem carefully: {{input}}",
            "Read the task, reason briefly, then answer: {{input}}",
        ]

    def test_fallback_skips_code_fences(self):
        output = "```\nfenced block that is quite long\n```"
        assert parse_mutations(output, 3) == []

    def test_empty_output(self):
        assert parse_mutations("", 3) == []
        assert parse_mutations(None, 3) == []


# =====================================================================
# Prompt building
# =====================================================================

class TestPromptBuilding:
    def test_reflection_prompt_samples_failures(self):
        v = PromptVariant.new({"template": "Q: {{input}}"})
        task = Task.new({"input": "2+2", "expected": "4"})
        failures = [TaskResult(task=task, success=False, output="five") for _ in range(7)]
        prompt = build_reflection_prompt(v, failures)
        assert "Q: {{input}}" in prompt
        assert "5 of 7 failures" in prompt
        assert "### Failure 5" in prompt
        assert "### Failure 6" not in prompt
        assert "Expected: 4" in prompt

    def test_reflection_prompt_shows_errors(self):
        v = PromptVariant.new({"template": "Q: {{input}}"})
        failure = TaskResult(task=Task.new({"input": "x"}), success=False, error="timeout")
        assert "Error: timeout" in build_reflection_prompt(v, [failure])

    def test_mutation_prompt_format(self):
        v = PromptVariant.new({"template": "Q: {{input}}"})
        prompt = build_mutation_prompt(v, "needs more detail", 2)
        assert "Generate exactly 2" in prompt
        assert "---MUTATION 1---" in prompt
        assert "---MUTATION 2---" in prompt
        assert "needs more detail" in prompt

    def test_map_template_sections(self):
        v = PromptVariant.new({"template": {"system": "Be brief.", "user": "Q: {{input}}"}})
        prompt = build_mutation_prompt(v, "r", 1)
        assert "## system\nBe brief." in prompt
        assert "## user\nQ: {{input}}" in prompt
        assert "section heading" in prompt

    def test_crossover_prompt_shows_both_parents(self):
        a = PromptVariant.new({"template": "Parent A {{input}}"})
        b = PromptVariant.new({"template": "Parent B {{input}}"})
        prompt = build_crossover_prompt(a, b, 2)
        assert "Parent A {{input}}" in prompt
        assert "Parent B {{input}}" in prompt
        assert "Create 2 hybrid" in prompt


# =====================================================================
# Reflector
# =====================================================================

class TestReflector:
    def test_rejects_missing_runner(self):
        with pytest.raises(ConfigurationError):
            Reflector(None)

    def test_rejects_bad_arity(self):
        with pytest.raises(ConfigurationError) as exc:
            Reflector(lambda prompt, task_input: "x")
        assert exc.value.reason == "invalid_runner"

    @pytest.mark.asyncio
    async def test_no_failures_skips_runner(self):
        runner = ScriptedRunner()
        reflector = Reflector(runner)
        v = PromptVariant.new({"template": "Q: {{input}}"})
        assert await reflector.reflect_on_failures(v, []) == NO_FAILURES_REFLECTION
        assert runner.prompts == []

    @pytest.mark.asyncio
    async def test_reflect_on_failures(self):
        runner = ScriptedRunner(reflection="  Missing answer format.  ")
        reflector = Reflector(runner)
        v = PromptVariant.new({"template": "Q: {{input}}"})
        text = await reflector.reflect_on_failures(v, failing_result().results)
        assert text == "Missing answer format."
        assert len(runner.prompts) == 1

    @pytest.mark.asyncio
    async def test_mutate_prompt_children(self):
        runner = ScriptedRunner()
        reflector = Reflector(runner, mutation_count=3)
        parent = PromptVariant.new({"template": "Q: {{input}}", "generation": 1})

        children = await reflector.mutate_prompt(parent, failing_result(parent.id))

        assert len(children) == 2
        for child in children:
            assert child.generation == 2
            assert child.parents == [parent.id]
            assert child.mutation_type == "mutation"
            assert not child.evaluated
            assert "final answer" in child.metadata["reflection"]
        assert children[0].template == "Answer the question step by step: {{input}}"
        # reflection call then mutation call
        assert len(runner.prompts) == 2

    @pytest.mark.asyncio
    async def test_mutate_prompt_without_failures_still_proposes(self):
        runner = ScriptedRunner()
        reflector = Reflector(runner)
        parent = PromptVariant.new({"template": "Q: {{input}}"})
        children = await reflector.mutate_prompt(parent, EvaluationResult(variant_id=parent.id))
        assert len(children) == 2
        assert len(runner.prompts) == 1
        assert NO_FAILURES_REFLECTION in runner.prompts[0]

    @pytest.mark.asyncio
    async def test_zero_count_skips_runner(self):
        runner = ScriptedRunner()
        reflector = Reflector(runner)
        parent = PromptVariant.new({"template": "Q: {{input}}"})
        assert await reflector.propose_mutations(parent, "r", count=0) == []
        assert runner.prompts == []

    @pytest.mark.asyncio
    async def test_map_template_children_keep_shape(self):
        reply = (
            "---MUTATION 1---\n"
            "## system\nBe brief and exact.\n\n## user\nQuestion: {{input}}\n"
        )
        runner = ScriptedRunner(mutations=reply)
        reflector = Reflector(runner)
        parent = PromptVariant.new({
            "template": {"system": "Be brief.", "user": "Q: {{input}}", "temperature": 0.2},
        })
        templates = await reflector.propose_mutations(parent, "r", count=1)
        assert templates == [{
            "system": "Be brief and exact.",
            "user": "Question: {{input}}",
            "temperature": 0.2,
        }]

    @pytest.mark.asyncio
    async def test_map_template_unmatched_sections_become_string(self):
        runner = ScriptedRunner(mutations="---MUTATION 1---\nJust a flat rewrite of the prompt {{input}}")
        reflector = Reflector(runner)
        parent = PromptVariant.new({"template": {"system": "Be brief.", "user": "Q: {{input}}"}})
        templates = await reflector.propose_mutations(parent, "r", count=1)
        assert templates == ["Just a flat rewrite of the prompt {{input}}"]

    @pytest.mark.asyncio
    async def test_crossover(self):
        runner = ScriptedRunner()
        reflector = Reflector(runner, children_count=2)
        a = PromptVariant.new({"template": "A {{input}}", "generation": 1})
        b = PromptVariant.new({"template": "B {{input}}", "generation": 3})

        children = await reflector.crossover(a, b)

        assert len(children) == 2
        for child in children:
            assert child.parents == [a.id, b.id]
            assert child.generation == 4
            assert child.mutation_type == "crossover"
        assert runner.prompts[0].startswith("You are combining")

    @pytest.mark.asyncio
    async def test_runner_error_becomes_reflection_error(self):
        def runner(prompt, task_input, opts):
            return {"ok": False, "error": "quota"}

        reflector = Reflector(runner)
        v = PromptVariant.new({"template": "Q: {{input}}"})
        with pytest.raises(ReflectionError) as exc:
            await reflector.propose_mutations(v, "r")
        assert exc.value.detail == "quota"

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_reflection_error(self):
        def runner(prompt, task_input, opts):
            raise RuntimeError("network down")

        reflector = Reflector(runner)
        v = PromptVariant.new({"template": "Q: {{input}}"})
        with pytest.raises(ReflectionError) as exc:
            await reflector.mutate_prompt(v, failing_result(v.id))
        assert "network down" in str(exc.value)

    @pytest.mark.asyncio
    async def test_unparseable_reply_yields_no_children(self):
        runner = ScriptedRunner(mutations="no")
        reflector = Reflector(runner)
        v = PromptVariant.new({"template": "Q: {{input}}"})
        assert await reflector.mutate_prompt(v, failing_result(v.id)) == []
