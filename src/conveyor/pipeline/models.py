"""Pipeline Pydantic models — stage graph definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, StageDefinition, TaskAction,
        ApprovalAction, ParameterDefinition, HookAction, PostHooks
    Runtime state models: RunParameters, PipelineKey, StageResult, RunResult,
        ApprovalRequest, ApprovalOutcome, HookResult
    Enums: StageKind, StageStatus, ParameterType, HookClass, ApprovalDecision
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class StageKind(str, Enum):
    """Shape of a node in the stage graph."""

    LEAF = "leaf"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StageStatus(str, Enum):
    """Stage and run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)

    @property
    def is_failing(self) -> bool:
        """Failure and Aborted stop a sequential group and trip fail-fast."""
        return self in (StageStatus.FAILURE, StageStatus.ABORTED)

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self, 2)


# Severity for aggregation; Skipped/Pending/Running never participate.
STATUS_SEVERITY: dict[StageStatus, int] = {
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.FAILURE: 2,
    StageStatus.ABORTED: 3,
}

_EXIT_CODES: dict[StageStatus, int] = {
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.FAILURE: 2,
    StageStatus.ABORTED: 3,
}


def aggregate_status(statuses: list[StageStatus] | tuple[StageStatus, ...]) -> StageStatus:
    """Return the most severe status, ignoring non-participating ones.

    An empty (or all-skipped) set aggregates to Success.
    """
    worst = StageStatus.SUCCESS
    for status in statuses:
        severity = STATUS_SEVERITY.get(status)
        if severity is not None and severity > STATUS_SEVERITY[worst]:
            worst = status
    return worst


class ParameterType(str, Enum):
    """Kinds of trigger parameters."""

    STRING = "string"
    BOOLEAN = "boolean"
    CHOICE = "choice"


class HookClass(str, Enum):
    """Post-run hook classes, in dispatch order."""

    ALWAYS = "always"
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    CHANGED = "changed"


class ApprovalDecision(str, Enum):
    """How an approval gate was resolved."""

    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


# ── Stage ID validation ──────────────────────────────────────────────────────

STAGE_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

Duration = Union[int, float, str]


# ── Definition Models (parsed from YAML) ─────────────────────────────────────


class ComputedValue(BaseModel):
    """An environment value produced by running a command."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    command: str


EnvValue = Union[str, int, float, bool, ComputedValue]


class TaskAction(BaseModel):
    """Run one command through the Task Runner."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["task"] = "task"
    command: str = Field(min_length=1)
    workdir: str | None = None
    environment: dict[str, EnvValue] = {}


class ApprovalAction(BaseModel):
    """Block the stage until an authorized submitter responds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["approval"] = "approval"
    message: str = "Proceed?"
    submitters: list[str] = []
    fields: dict[str, str] = {}
    timeout: Duration | None = None

    def timeout_seconds(self) -> float | None:
        return parse_duration_seconds(self.timeout) if self.timeout is not None else None


StageAction = Annotated[Union[TaskAction, ApprovalAction], Field(discriminator="type")]


class StageDefinition(BaseModel):
    """A node in the stage graph.

    Leaves carry an ``action``; groups carry ``stages``. The YAML shorthands
    ``run: <command>`` and ``approval: {...}`` are folded into ``action``
    before validation.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    kind: StageKind = StageKind.LEAF
    when: str | None = None
    timeout: Duration | None = None
    environment: dict[str, EnvValue] = {}
    action: StageAction | None = None
    stages: list[StageDefinition] = []
    fail_fast: bool = False
    non_critical: bool = False

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthands(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "run" in data:
            if "action" in data or "approval" in data:
                msg = f"Stage '{data.get('id')}': 'run' cannot be combined with another action"
                raise ValueError(msg)
            run = data.pop("run")
            data["action"] = {"type": "task", "command": run} if isinstance(run, str) else run
        if "approval" in data:
            if "action" in data:
                msg = f"Stage '{data.get('id')}': 'approval' cannot be combined with 'action'"
                raise ValueError(msg)
            data["action"] = {"type": "approval", **(data.pop("approval") or {})}
        if "kind" not in data and data.get("stages"):
            data["kind"] = StageKind.SEQUENTIAL.value
        return data

    @model_validator(mode="after")
    def validate_stage(self) -> StageDefinition:
        if not STAGE_ID_PATTERN.match(self.id):
            msg = f"Stage ID '{self.id}' must match pattern {STAGE_ID_PATTERN.pattern}"
            raise ValueError(msg)

        match self.kind:
            case StageKind.LEAF:
                if self.action is None:
                    msg = f"Stage '{self.id}': leaf stages require an action ('run' or 'approval')"
                    raise ValueError(msg)
                if self.stages:
                    msg = f"Stage '{self.id}': leaf stages cannot have child stages"
                    raise ValueError(msg)
            case StageKind.SEQUENTIAL | StageKind.PARALLEL:
                if not self.stages:
                    msg = f"Stage '{self.id}': {self.kind.value} groups require at least one stage"
                    raise ValueError(msg)
                if self.action is not None:
                    msg = f"Stage '{self.id}': group stages cannot have an action"
                    raise ValueError(msg)

        if self.fail_fast and self.kind != StageKind.PARALLEL:
            msg = f"Stage '{self.id}': 'fail_fast' only applies to parallel groups"
            raise ValueError(msg)
        if self.non_critical and self.kind != StageKind.LEAF:
            msg = f"Stage '{self.id}': 'non_critical' only applies to leaf stages"
            raise ValueError(msg)
        if self.timeout is not None:
            parse_duration_seconds(self.timeout)
        if isinstance(self.action, ApprovalAction) and self.action.timeout is not None:
            parse_duration_seconds(self.action.timeout)
        return self

    @property
    def is_group(self) -> bool:
        return self.kind != StageKind.LEAF

    def timeout_seconds(self) -> float | None:
        return parse_duration_seconds(self.timeout) if self.timeout is not None else None

    def walk(self):
        """Yield this stage and every descendant, depth-first in declaration order."""
        yield self
        for child in self.stages:
            yield from child.walk()


StageDefinition.model_rebuild()


class ParameterDefinition(BaseModel):
    """One entry of the trigger parameter schema."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    type: ParameterType = ParameterType.STRING
    description: str = ""
    default: str | bool | None = None
    choices: list[str] = []

    @model_validator(mode="after")
    def validate_parameter(self) -> ParameterDefinition:
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", self.name):
            msg = f"Parameter name '{self.name}' is not a valid identifier"
            raise ValueError(msg)
        if self.type == ParameterType.CHOICE:
            if not self.choices:
                msg = f"Parameter '{self.name}': choice parameters require 'choices'"
                raise ValueError(msg)
            if self.default is not None and self.default not in self.choices:
                msg = f"Parameter '{self.name}': default {self.default!r} is not a valid choice"
                raise ValueError(msg)
        elif self.choices:
            msg = f"Parameter '{self.name}': only choice parameters take 'choices'"
            raise ValueError(msg)
        if self.type == ParameterType.BOOLEAN and self.default is not None:
            if not isinstance(self.default, bool):
                msg = f"Parameter '{self.name}': boolean default must be true or false"
                raise ValueError(msg)
        return self

    def effective_default(self) -> str | bool | None:
        if self.default is not None:
            return self.default
        if self.type == ParameterType.BOOLEAN:
            return False
        if self.type == ParameterType.CHOICE:
            return self.choices[0]
        return None


class TaskHook(BaseModel):
    """Post-run hook that runs a command."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["task"] = "task"
    name: str | None = None
    command: str = Field(min_length=1)
    workdir: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.command


class WebhookHook(BaseModel):
    """Post-run hook that POSTs the run summary to a URL."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["webhook"] = "webhook"
    name: str | None = None
    url: str
    headers: dict[str, str] = {}
    timeout: float = 10.0

    @property
    def label(self) -> str:
        return self.name or self.url


HookAction = Annotated[Union[TaskHook, WebhookHook], Field(discriminator="type")]


class PostHooks(BaseModel):
    """Hook sets keyed by result class."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    always: list[HookAction] = []
    success: list[HookAction] = []
    unstable: list[HookAction] = []
    failure: list[HookAction] = []
    changed: list[HookAction] = []

    @model_validator(mode="before")
    @classmethod
    def _default_hook_type(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized: dict[str, Any] = {}
        for key, hooks in data.items():
            items = []
            for hook in hooks or []:
                if isinstance(hook, str):
                    hook = {"type": "task", "command": hook}
                elif isinstance(hook, dict) and "type" not in hook:
                    hook = {"type": "webhook" if "url" in hook else "task", **hook}
                items.append(hook)
            normalized[key] = items
        return normalized

    def for_class(self, hook_class: HookClass) -> list[TaskHook | WebhookHook]:
        return list(getattr(self, hook_class.value))


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from a YAML document.

    The top-level ``stages`` list forms the root sequential group.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str = ""
    timeout: Duration | None = None
    parameters: list[ParameterDefinition] = []
    environment: dict[str, EnvValue] = {}
    stages: list[StageDefinition] = Field(min_length=1)
    post: PostHooks = PostHooks()

    @model_validator(mode="after")
    def validate_graph(self) -> PipelineDefinition:
        ids = [s.id for s in self.walk()]
        dupes = sorted({sid for sid in ids if ids.count(sid) > 1})
        if dupes:
            msg = f"Duplicate stage IDs: {dupes}"
            raise ValueError(msg)

        names = [p.name for p in self.parameters]
        dupe_params = sorted({n for n in names if names.count(n) > 1})
        if dupe_params:
            msg = f"Duplicate parameter names: {dupe_params}"
            raise ValueError(msg)

        if self.timeout is not None:
            parse_duration_seconds(self.timeout)
        return self

    def walk(self):
        """Yield every stage in the graph, depth-first in declaration order."""
        for stage in self.stages:
            yield from stage.walk()

    def get_stage(self, stage_id: str) -> StageDefinition | None:
        """Look up a stage anywhere in the graph by ID."""
        for stage in self.walk():
            if stage.id == stage_id:
                return stage
        return None

    def get_parameter(self, name: str) -> ParameterDefinition | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def timeout_seconds(self) -> float | None:
        return parse_duration_seconds(self.timeout) if self.timeout is not None else None


# ── Runtime State Models ─────────────────────────────────────────────────────


class PipelineKey(BaseModel):
    """Identity of "this pipeline on this branch" for locking and history."""

    model_config = ConfigDict(frozen=True)

    pipeline: str
    branch: str = "main"

    def __str__(self) -> str:
        return f"{self.pipeline}/{self.branch}"


class RunParameters(BaseModel):
    """Validated trigger input; immutable for the run's lifetime."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, str | bool | None] = {}

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def as_environment(self) -> dict[str, str]:
        """Stringify non-null values for the environment context."""
        env: dict[str, str] = {}
        for name, value in self.values.items():
            if value is None:
                continue
            env[name] = ("true" if value else "false") if isinstance(value, bool) else str(value)
        return env


class StageResult(BaseModel):
    """Runtime state of one stage in one run."""

    stage_id: str
    parent_id: str | None = None
    kind: StageKind = StageKind.LEAF
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    output: str | None = None
    outputs: dict[str, Any] = {}
    message: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def mark_running(self) -> None:
        self.status = StageStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def finish(self, status: StageStatus, message: str | None = None) -> None:
        self.status = status
        if message is not None:
            self.message = message
        self.finished_at = datetime.now(timezone.utc)


class HookResult(BaseModel):
    """Outcome of one post-run hook execution."""

    hook_class: HookClass
    name: str
    success: bool
    error: str | None = None


class RunResult(BaseModel):
    """Aggregate outcome of a pipeline run plus its per-stage trail."""

    run_id: str
    key: PipelineKey
    build_number: int = 0
    status: StageStatus = StageStatus.PENDING
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    duration_ms: int = 0
    parameters: dict[str, Any] = {}
    stages: list[StageResult] = []
    hooks: list[HookResult] = []
    warnings: list[str] = []

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def get_stage(self, stage_id: str) -> StageResult | None:
        for result in self.stages:
            if result.stage_id == stage_id:
                return result
        return None


class ApprovalRequest(BaseModel):
    """What an approval gate is waiting for."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    stage_id: str
    message: str
    allowed_submitters: frozenset[str] = frozenset()
    fields: dict[str, str] = {}
    timeout: float | None = None

    def is_allowed(self, submitter: str) -> bool:
        return not self.allowed_submitters or submitter in self.allowed_submitters


class ApprovalOutcome(BaseModel):
    """How an approval gate was resolved."""

    decision: ApprovalDecision
    submitter: str | None = None
    fields: dict[str, str] = {}
    reason: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)$")
_DURATION_MULTIPLIERS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration_seconds(duration: Duration) -> float:
    """Parse a duration like ``30``, ``'500ms'``, ``'5m'``, ``'2h'`` to seconds.

    Raises ValueError on invalid format or non-positive values.
    """
    if isinstance(duration, bool):
        msg = f"Invalid duration: {duration!r}"
        raise ValueError(msg)
    if isinstance(duration, (int, float)):
        seconds = float(duration)
    else:
        match = _DURATION_RE.match(duration.strip())
        if not match:
            msg = f"Invalid duration format: '{duration}'. Expected <number><ms|s|m|h|d>"
            raise ValueError(msg)
        seconds = float(match.group(1)) * _DURATION_MULTIPLIERS[match.group(2)]
    if seconds <= 0:
        msg = f"Duration must be positive: {duration!r}"
        raise ValueError(msg)
    return seconds
