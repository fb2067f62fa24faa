# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Prompt template helpers: render, format for reflection, parse back.

Templates are either a flat string or a map of named fragments. Map
templates are shown to the reflection model as ``## <name>`` sections so a
rewritten template can be split back into the same fragments.
"""
import json
import re
from typing import Any, Dict, List, Tuple, Union

Template = Union[str, Dict[str, Any]]

PLACEHOLDERS = ("{{input}}", "{{ input }}")

_HEADING_RE = re.compile(r"^##\s+(.+?)\s*$")


def input_to_text(task_input: Any) -> str:
    """Flatten a task input to text. Structured inputs become JSON."""
    if isinstance(task_input, str):
        return task_input
    return json.dumps(task_input, ensure_ascii=False, default=str)


def render_template(template: Template, task_input: Any) -> Template:
    """Substitute the input placeholder.

    Map templates render each string fragment independently; other
    fragment values pass through unchanged.
    """
    if isinstance(template, str):
        text = input_to_text(task_input)
        for placeholder in PLACEHOLDERS:
            template = template.replace(placeholder, text)
        return template

    if isinstance(template, dict):
        return {
            k: render_template(v, task_input) if isinstance(v, str) else v
            for k, v in template.items()
        }

    return template


def format_template(template: Template) -> str:
    """Format a template inside a code fence for a reflection prompt."""
    if isinstance(template, dict):
        parts = []
        for k, v in template.items():
            if isinstance(v, str):
                parts.append("## {}\n{}".format(k, v))
        return "```\n{}\n```".format("\n\n".join(parts))
    return "```\n{}\n```".format(template)


def split_sections(text: str) -> List[Tuple[str, str]]:
    """Split text into (heading, body) tuples by ``##`` markers.

    Text before the first heading gets heading=''.
    """
    sections = []
    current_heading = ""
    current_lines: List[str] = []

    for line in text.strip().split("\n"):
        m = _HEADING_RE.match(line)
        if m:
            if current_lines or current_heading:
                sections.append((current_heading, "\n".join(current_lines).strip()))
            current_heading = m.group(1)
            current_lines = []
        else:
            current_lines.append(line)

    if current_lines or current_heading:
        sections.append((current_heading, "\n".join(current_lines).strip()))

    return sections


def coerce_like(parent: Template, text: str) -> Template:
    """Shape a proposed template like its parent.

    For a map parent, the text is split into sections; if every string
    fragment of the parent has a matching section, a new map is returned.
    Anything else comes back as a flat string.
    """
    if not isinstance(parent, dict):
        return text

    by_name = {heading: body for heading, body in split_sections(text) if heading}
    string_keys = [k for k, v in parent.items() if isinstance(v, str)]
    if not string_keys or any(str(k) not in by_name for k in string_keys):
        return text

    child = dict(parent)
    for k in string_keys:
        child[k] = by_name[str(k)]
    return child


def strip_code_fences(text: str) -> str:
    text = re.sub(r"^```\w*\n?", "", text.strip())
    text = re.sub(r"\n?```$", "", text)
    return text.strip()


def truncate(value: Any, max_len: int) -> str:
    if value is None:
        return "(none)"
    if not isinstance(value, str):
        value = repr(value)
    if len(value) > max_len:
        return value[:max_len] + "..."
    return value
