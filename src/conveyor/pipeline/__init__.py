"""Declarative pipeline orchestration.

A pipeline definition describes a stage graph: leaf stages that run a
command or wait for approval, grouped into sequential and parallel
containers. The engine walks that graph for one run, aggregates stage
outcomes into a single result, dispatches post-run hooks, and records the
result in build history.

Key exports:
    PipelineEngine — Core execution engine
    SqliteBuildHistory — SQLite build history
    ApprovalBroker — Open approval gates and their submissions
    HookDispatcher — Post-run hook dispatch
    PipelineDefinition — Pipeline config model
    RunResult, StageResult — Runtime state models
"""

from conveyor.pipeline.approvals import ApprovalBroker
from conveyor.pipeline.engine import PipelineEngine
from conveyor.pipeline.environment import EnvironmentContext
from conveyor.pipeline.errors import (
    ApprovalForbidden,
    ApprovalNotPending,
    ConcurrentRunRejected,
    ConveyorError,
    DefinitionInvalid,
    EnvironmentResolutionError,
    GuardEvaluationError,
    ParameterInvalid,
    UnknownRun,
)
from conveyor.pipeline.history import BuildHistoryStore, SqliteBuildHistory
from conveyor.pipeline.hooks import HookCallback, HookDispatcher, classes_to_fire
from conveyor.pipeline.loader import (
    load_definition,
    load_definitions,
    loads_definition,
    parse_definition,
    resolve_parameters,
)
from conveyor.pipeline.models import (
    ApprovalAction,
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRequest,
    HookClass,
    HookResult,
    ParameterDefinition,
    ParameterType,
    PipelineDefinition,
    PipelineKey,
    PostHooks,
    RunParameters,
    RunResult,
    StageDefinition,
    StageKind,
    StageResult,
    StageStatus,
    TaskAction,
    TaskHook,
    WebhookHook,
    aggregate_status,
)
from conveyor.pipeline.runner import ShellTaskRunner, TaskOutcome, TaskRunner

__all__ = [
    # Engine
    "PipelineEngine",
    # Execution collaborators
    "TaskRunner",
    "TaskOutcome",
    "ShellTaskRunner",
    "ApprovalBroker",
    "HookDispatcher",
    "HookCallback",
    "classes_to_fire",
    "EnvironmentContext",
    # History
    "BuildHistoryStore",
    "SqliteBuildHistory",
    # Loading
    "load_definition",
    "load_definitions",
    "loads_definition",
    "parse_definition",
    "resolve_parameters",
    # Definition models
    "PipelineDefinition",
    "StageDefinition",
    "TaskAction",
    "ApprovalAction",
    "ParameterDefinition",
    "PostHooks",
    "TaskHook",
    "WebhookHook",
    # Runtime state models
    "PipelineKey",
    "RunParameters",
    "RunResult",
    "StageResult",
    "HookResult",
    "ApprovalRequest",
    "ApprovalOutcome",
    "aggregate_status",
    # Enums
    "StageKind",
    "StageStatus",
    "ParameterType",
    "HookClass",
    "ApprovalDecision",
    # Errors
    "ConveyorError",
    "DefinitionInvalid",
    "ParameterInvalid",
    "ConcurrentRunRejected",
    "GuardEvaluationError",
    "EnvironmentResolutionError",
    "ApprovalNotPending",
    "ApprovalForbidden",
    "UnknownRun",
]
