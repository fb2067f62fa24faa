# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Runner callbacks: validation, invocation and response normalization.

A runner is ``runner(prompt, task_input, runner_opts)``. It may be a plain
function (run in a worker thread) or a coroutine function. Accepted return
shapes:

  RunnerResponse(...)
  {"ok": True, "output": "...", "tokens": 42}
  {"ok": False, "error": "rate limited"}
  ("ok", {"output": "...", "tokens": 42})  /  ("error", reason)
  "plain output"                           (0 tokens)

Error responses raise RunnerError; callers decide how to degrade.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from gepa_optimizer.errors import ConfigurationError, RunnerError
from gepa_optimizer.models import RunnerResponse

logger = logging.getLogger(__name__)

Runner = Callable[[Any, Any, Dict[str, Any]], Any]


def accepts_three_args(fn: Any) -> bool:
    """True if ``fn`` is callable with three positional arguments."""
    if not callable(fn):
        return False
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # Builtins without introspectable signatures
        return True
    try:
        sig.bind(None, None, None)
    except TypeError:
        return False
    return True


def validate_runner(runner: Any, name: str = "runner") -> Runner:
    if runner is None:
        raise ConfigurationError("runner_required", "{} is required".format(name))
    if not accepts_three_args(runner):
        raise ConfigurationError(
            "invalid_runner",
            "{} must be a callable taking (prompt, task_input, runner_opts)".format(name),
        )
    return runner


def _is_async(fn: Any) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None),
    )


def _ok(payload: Any) -> RunnerResponse:
    if isinstance(payload, str):
        return RunnerResponse(output=payload)
    if isinstance(payload, dict) and "output" in payload:
        output = payload.get("output")
        return RunnerResponse(
            output="" if output is None else str(output),
            tokens=max(0, int(payload.get("tokens") or 0)),
        )
    raise RunnerError("invalid_runner_response")


def normalize_response(raw: Any) -> RunnerResponse:
    """Coerce a runner's return value into a RunnerResponse."""
    if isinstance(raw, RunnerResponse):
        if not raw.ok:
            raise RunnerError(raw.error if raw.error is not None else "runner_error")
        return raw

    if isinstance(raw, str):
        return RunnerResponse(output=raw)

    if isinstance(raw, dict):
        if raw.get("ok", True) is False or ("error" in raw and "output" not in raw):
            raise RunnerError(raw.get("error") or "runner_error")
        return _ok(raw)

    if isinstance(raw, tuple) and len(raw) == 2:
        status, payload = raw
        if status in ("ok", True):
            return _ok(payload)
        if status in ("error", False):
            raise RunnerError(payload)

    raise RunnerError("invalid_runner_response")


async def call_runner(
    runner: Runner,
    prompt: Any,
    task_input: Any,
    runner_opts: Optional[Dict[str, Any]] = None,
    timeout_s: Optional[float] = None,
) -> RunnerResponse:
    """Invoke a runner under an optional timeout.

    Raises asyncio.TimeoutError, RunnerError, or whatever the runner raised.
    A timeout cannot cancel a sync runner: its worker thread keeps running
    until the call returns, only the result is discarded.
    """
    opts = dict(runner_opts or {})

    async def _invoke():
        if _is_async(runner):
            result = await runner(prompt, task_input, opts)
        else:
            result = await asyncio.to_thread(runner, prompt, task_input, opts)
        if inspect.isawaitable(result):
            result = await result
        return result

    if timeout_s:
        raw = await asyncio.wait_for(_invoke(), timeout=timeout_s)
    else:
        raw = await _invoke()
    return normalize_response(raw)
