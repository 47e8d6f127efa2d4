"""Exceptions raised across pipeline API boundaries.

Stage-level outcomes (task failure, instability, timeouts, cancellation,
rejected approvals) are recorded as statuses on ``StageResult`` and never
surface as exceptions. Only the errors below cross a module boundary.
"""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for all conveyor errors."""


class DefinitionInvalid(ConveyorError):
    """A pipeline definition failed to load or validate; nothing was run."""

    def __init__(self, message: str, *, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class ParameterInvalid(DefinitionInvalid):
    """Trigger parameters do not match the pipeline's parameter schema."""


class ConcurrentRunRejected(ConveyorError):
    """Another run holds the pipeline key; the new run was refused, not queued."""

    def __init__(self, key: object, active_run_id: str):
        super().__init__(f"Pipeline '{key}' already has an active run ({active_run_id})")
        self.key = key
        self.active_run_id = active_run_id


class GuardEvaluationError(ConveyorError):
    """A guard expression could not be parsed or referenced an unknown variable."""


class EnvironmentResolutionError(ConveyorError):
    """A computed environment value could not be produced."""

    def __init__(self, name: str, message: str):
        super().__init__(f"Environment variable '{name}': {message}")
        self.name = name


class ApprovalNotPending(ConveyorError):
    """No open approval gate exists for the given run and stage."""


class ApprovalForbidden(ConveyorError):
    """The submitter is not allowed to answer the approval gate."""

    def __init__(self, submitter: str, stage_id: str):
        super().__init__(f"'{submitter}' is not allowed to submit input for stage '{stage_id}'")
        self.submitter = submitter
        self.stage_id = stage_id


class UnknownRun(ConveyorError):
    """The run ID is not known to the engine or the history store."""
