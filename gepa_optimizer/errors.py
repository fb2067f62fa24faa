# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Exception hierarchy for the optimizer."""
from typing import Any, Optional


class GEPAError(Exception):
    """Base class for all optimizer errors.

    ``reason`` is a short machine-readable code (e.g. ``runner_required``).
    """

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


class ConfigurationError(GEPAError, ValueError):
    """Invalid optimizer configuration, raised before any work starts."""


class InvalidTask(GEPAError, ValueError):
    """A Task could not be built from the given attributes."""


class InvalidVariant(GEPAError, ValueError):
    """A PromptVariant could not be built from the given attributes."""


class RunnerError(GEPAError):
    """A runner call failed or returned an unusable payload."""

    def __init__(self, reason: Any, message: Optional[str] = None):
        self.detail = reason
        super().__init__(
            reason if isinstance(reason, str) else "runner_error",
            message or "Runner failed: {}".format(reason),
        )


class ReflectionError(RunnerError):
    """A reflection-runner call failed."""
