"""Pipeline engine — drives one run of a stage graph to a final result.

Key exports:
    PipelineEngine — submit_run()/start_run(), abort_run(), live run lookup.

Each run is driven by one coordinating asyncio task. Parallel groups fan
out into child tasks joined with :func:`asyncio.wait`; timeouts, fail-fast
and external aborts all cancel the affected subtree cooperatively, and the
cancelled stages record Aborted. A group always finishes its own
aggregation, so stage failures never escape as exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

from conveyor.pipeline import guards
from conveyor.pipeline.approvals import ApprovalBroker
from conveyor.pipeline.environment import EnvironmentContext
from conveyor.pipeline.errors import (
    ConcurrentRunRejected,
    EnvironmentResolutionError,
    GuardEvaluationError,
    UnknownRun,
)
from conveyor.pipeline.history import BuildHistoryStore
from conveyor.pipeline.hooks import HookDispatcher
from conveyor.pipeline.loader import resolve_parameters
from conveyor.pipeline.models import (
    ApprovalAction,
    ApprovalDecision,
    ApprovalRequest,
    PipelineDefinition,
    PipelineKey,
    RunParameters,
    RunResult,
    StageDefinition,
    StageKind,
    StageResult,
    StageStatus,
    TaskAction,
    aggregate_status,
)
from conveyor.pipeline.runner import TaskRunner

logger = logging.getLogger("conveyor.pipeline.engine")


@dataclass
class _RunState:
    """Bookkeeping for one in-flight run. Owned by the engine."""

    run_id: str
    key: PipelineKey
    definition: PipelineDefinition
    params: RunParameters
    result: RunResult
    results: dict[str, StageResult] = field(default_factory=dict)
    task: asyncio.Task | None = None
    graph_task: asyncio.Task | None = None
    abort_requested: bool = False

    def warn(self, message: str) -> None:
        logger.warning("Run %s: %s", self.run_id, message)
        self.result.warnings.append(message)


class PipelineEngine:
    """Core pipeline execution engine.

    Responsibilities:
        - Enforce single-instance runs per PipelineKey (reject, never queue)
        - Evaluate guards and walk sequential/parallel groups
        - Run leaves through the Task Runner or the Approval Broker
        - Enforce stage and run timeouts and external aborts
        - Dispatch post-run hooks and record the result in build history

    Usage:
        engine = PipelineEngine(history, ShellTaskRunner())
        result = await engine.start_run(PipelineKey(pipeline="web"), definition, {"DEPLOY": "staging"})
    """

    def __init__(
        self,
        history: BuildHistoryStore,
        runner: TaskRunner,
        *,
        approvals: ApprovalBroker | None = None,
        dispatcher: HookDispatcher | None = None,
        default_run_timeout: float | None = None,
        max_parallel_tasks: int | None = None,
    ):
        self._history = history
        self._runner = runner
        self._approvals = approvals or ApprovalBroker()
        self._dispatcher = dispatcher or HookDispatcher(runner)
        self._default_run_timeout = default_run_timeout
        self._task_slots = asyncio.Semaphore(max_parallel_tasks) if max_parallel_tasks else None

        # Pipeline definitions (name → definition)
        self._pipelines: dict[str, PipelineDefinition] = {}

        # PipelineKey → run_id of the run holding it
        self._locks: dict[PipelineKey, str] = {}
        self._runs: dict[str, _RunState] = {}

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def approvals(self) -> ApprovalBroker:
        return self._approvals

    @property
    def dispatcher(self) -> HookDispatcher:
        return self._dispatcher

    def add_pipeline(self, definition: PipelineDefinition) -> None:
        """Register a pipeline definition by its name."""
        self._pipelines[definition.name] = definition

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self._pipelines.get(name)

    def list_pipelines(self) -> list[PipelineDefinition]:
        return [self._pipelines[name] for name in sorted(self._pipelines)]

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    def submit_run(
        self,
        key: PipelineKey,
        definition: PipelineDefinition,
        parameters: RunParameters | Mapping[str, Any] | None = None,
    ) -> str:
        """Start a run in the background and return its run ID.

        Must be called from a running event loop. Rejection is synchronous.

        Raises:
            ParameterInvalid: If ``parameters`` do not match the schema.
            ConcurrentRunRejected: If another run holds ``key``.
        """
        return self._submit(key, definition, parameters).run_id

    async def start_run(
        self,
        key: PipelineKey,
        definition: PipelineDefinition,
        parameters: RunParameters | Mapping[str, Any] | None = None,
    ) -> RunResult:
        """Run a pipeline to completion and return its result."""
        state = self._submit(key, definition, parameters)
        assert state.task is not None
        return await asyncio.shield(state.task)

    async def wait_for_run(self, run_id: str) -> RunResult:
        """Wait for an active run to finish."""
        state = self._runs.get(run_id)
        if state is None or state.task is None:
            raise UnknownRun(f"No active run {run_id}")
        return await asyncio.shield(state.task)

    def abort_run(self, run_id: str, reason: str = "Aborted by request") -> bool:
        """Request cooperative cancellation of an active run."""
        state = self._runs.get(run_id)
        if state is None or state.abort_requested:
            return False
        state.abort_requested = True
        state.warn(reason)
        if state.graph_task is not None and not state.graph_task.done():
            state.graph_task.cancel()
        logger.info("Abort requested for run %s (%s)", run_id, state.key)
        return True

    def get_active_run(self, run_id: str) -> RunResult | None:
        """Live view of an in-flight run (None once finished)."""
        state = self._runs.get(run_id)
        return state.result if state else None

    def active_runs(self) -> list[RunResult]:
        return [state.result for state in self._runs.values()]

    def is_locked(self, key: PipelineKey) -> bool:
        return key in self._locks

    def _submit(
        self,
        key: PipelineKey,
        definition: PipelineDefinition,
        parameters: RunParameters | Mapping[str, Any] | None,
    ) -> _RunState:
        params = (
            parameters
            if isinstance(parameters, RunParameters)
            else resolve_parameters(definition, parameters)
        )
        run_id = f"run-{uuid.uuid4().hex[:12]}"
        self._acquire(key, run_id)

        result = RunResult(
            run_id=run_id,
            key=key,
            status=StageStatus.PENDING,
            parameters=dict(params.values),
            stages=[
                StageResult(stage_id=stage.id, parent_id=parent_id, kind=stage.kind)
                for stage, parent_id in _walk_with_parent(definition.stages, None)
            ],
        )
        state = _RunState(
            run_id=run_id,
            key=key,
            definition=definition,
            params=params,
            result=result,
            results={r.stage_id: r for r in result.stages},
        )
        self._runs[run_id] = state
        state.task = asyncio.create_task(self._drive(state), name=f"conveyor-{run_id}")
        logger.info("Submitted run %s of %s", run_id, key)
        return state

    def _acquire(self, key: PipelineKey, run_id: str) -> None:
        holder = self._locks.get(key)
        if holder is not None:
            logger.warning("Rejected new run of %s: run %s is still active", key, holder)
            raise ConcurrentRunRejected(key, holder)
        self._locks[key] = run_id

    def _release(self, key: PipelineKey, run_id: str) -> None:
        if self._locks.get(key) == run_id:
            del self._locks[key]

    async def _drive(self, state: _RunState) -> RunResult:
        try:
            return await self._execute(state)
        finally:
            self._release(state.key, state.run_id)
            self._runs.pop(state.run_id, None)

    async def _execute(self, state: _RunState) -> RunResult:
        result = state.result
        key = state.key
        definition = state.definition

        result.status = StageStatus.RUNNING
        result.timestamp = datetime.now(timezone.utc)

        previous = await self._previous_result(key)
        result.build_number = await self._next_build_number(state)
        logger.info(
            "Started pipeline '%s' run %s (%s #%d)",
            definition.name,
            state.run_id,
            key,
            result.build_number,
        )

        root = EnvironmentContext(self._builtin_environment(state), owner="global")
        cancelled = False
        try:
            await root.apply(state.params.as_environment())
            await root.apply(definition.environment, self._runner)
            root.freeze()
            status = await self._run_graph(state, root)
        except EnvironmentResolutionError as exc:
            state.warn(f"Global environment failed: {exc}")
            status = StageStatus.FAILURE
        except asyncio.CancelledError:
            # The coordinator itself was cancelled (e.g. shutdown); still finalize.
            cancelled = True
            status = StageStatus.ABORTED
            if state.graph_task is not None and not state.graph_task.done():
                state.graph_task.cancel()
                await asyncio.wait({state.graph_task})

        for stage_result in result.stages:
            if stage_result.status == StageStatus.PENDING:
                stage_result.finish(StageStatus.SKIPPED, stage_result.message or "Not reached")
            elif stage_result.status == StageStatus.RUNNING:
                stage_result.finish(StageStatus.ABORTED, "Run ended while stage was running")

        stage_statuses = [s.status for s in result.stages]
        result.status = aggregate_status([status, *stage_statuses])
        result.finished_at = datetime.now(timezone.utc)
        result.duration_ms = int((result.finished_at - result.timestamp).total_seconds() * 1000)

        logger.info(
            "Pipeline '%s' run %s finished: %s (%d ms)",
            definition.name,
            state.run_id,
            result.status.value,
            result.duration_ms,
        )

        try:
            result.hooks = await self._dispatcher.dispatch(
                result, previous, hooks=definition.post, env=root.as_dict()
            )
        except Exception as exc:
            logger.exception("Post-run hook dispatch failed for run %s", state.run_id)
            state.warn(f"Post-run hooks failed: {exc}")
        try:
            await self._history.record_result(key, result)
        except Exception:
            logger.exception("Failed to record run %s in build history", state.run_id)

        if cancelled:
            raise asyncio.CancelledError
        return result

    async def _previous_result(self, key: PipelineKey) -> RunResult | None:
        try:
            return await self._history.get_previous_result(key)
        except Exception:
            logger.exception("Failed to load previous result for %s", key)
            return None

    async def _next_build_number(self, state: _RunState) -> int:
        try:
            return await self._history.next_build_number(state.key)
        except Exception as exc:
            logger.exception("Failed to allocate a build number for %s", state.key)
            state.warn(f"Build number unavailable, using 0: {exc}")
            return 0

    async def _run_graph(self, state: _RunState, root: EnvironmentContext) -> StageStatus:
        """Run the root sequence under the run-level timeout and abort control."""
        if state.abort_requested:
            return StageStatus.ABORTED

        timeout = state.definition.timeout_seconds() or self._default_run_timeout
        state.graph_task = asyncio.create_task(
            self._run_sequence(state, state.definition.stages, root),
            name=f"conveyor-{state.run_id}-graph",
        )
        done, _ = await asyncio.wait({state.graph_task}, timeout=timeout)
        if not done:
            state.warn(f"Run timed out after {timeout}s")
            state.graph_task.cancel()
            await asyncio.wait({state.graph_task})
            return StageStatus.ABORTED

        if state.graph_task.cancelled():
            return StageStatus.ABORTED
        exc = state.graph_task.exception()
        if exc is not None:
            logger.error("Run %s graph raised", state.run_id, exc_info=exc)
            state.warn(f"Internal error: {exc}")
            return StageStatus.FAILURE
        return state.graph_task.result()

    def _builtin_environment(self, state: _RunState) -> dict[str, str]:
        return {
            "PIPELINE_NAME": state.definition.name,
            "BRANCH_NAME": state.key.branch,
            "BUILD_NUMBER": str(state.result.build_number),
            "BUILD_TIMESTAMP": state.result.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "RUN_ID": state.run_id,
        }

    # ── Stage Execution ──────────────────────────────────────────────────────

    async def _run_stage(
        self,
        state: _RunState,
        stage: StageDefinition,
        scope: EnvironmentContext,
    ) -> StageStatus:
        """Guard, time-box, and execute one stage. Returns its terminal status."""
        result = state.results[stage.id]

        try:
            allowed = guards.evaluate(stage, scope, state.params)
        except GuardEvaluationError as exc:
            state.warn(f"Guard for stage '{stage.id}' treated as false: {exc}")
            allowed = False
        if not allowed:
            self._skip_subtree(state, stage, f"Guard '{stage.when}' evaluated false")
            logger.info("Stage '%s' skipped by guard (run %s)", stage.id, state.run_id)
            return StageStatus.SKIPPED

        result.mark_running()
        logger.info("Stage '%s' running (run %s)", stage.id, state.run_id)

        timeout = stage.timeout_seconds()
        message: str | None = None
        try:
            if timeout is None:
                status = await self._run_body(state, stage, scope)
            else:
                status = await asyncio.wait_for(
                    self._run_body(state, stage, scope), timeout=timeout
                )
        except asyncio.TimeoutError:
            status = StageStatus.ABORTED
            message = f"Timed out after {timeout}s"
        except asyncio.CancelledError:
            result.finish(StageStatus.ABORTED, result.message or "Cancelled")
            logger.info("Stage '%s' cancelled (run %s)", stage.id, state.run_id)
            raise

        result.finish(status, message)
        log = logger.info if status in (StageStatus.SUCCESS, StageStatus.SKIPPED) else logger.warning
        log("Stage '%s' finished: %s (run %s)", stage.id, status.value, state.run_id)
        return status

    async def _run_body(
        self,
        state: _RunState,
        stage: StageDefinition,
        scope: EnvironmentContext,
    ) -> StageStatus:
        stage_scope = scope.child(stage.id)
        try:
            await stage_scope.apply(stage.environment, self._runner)
        except EnvironmentResolutionError as exc:
            state.results[stage.id].message = str(exc)
            return StageStatus.FAILURE

        match stage.kind:
            case StageKind.LEAF:
                return await self._run_leaf(state, stage, stage_scope)
            case StageKind.SEQUENTIAL:
                return await self._run_sequence(state, stage.stages, stage_scope)
            case StageKind.PARALLEL:
                return await self._run_parallel(state, stage, stage_scope)
        msg = f"Unknown stage kind: {stage.kind}"
        raise RuntimeError(msg)

    async def _run_sequence(
        self,
        state: _RunState,
        stages: list[StageDefinition],
        scope: EnvironmentContext,
    ) -> StageStatus:
        """Run children in order; stop issuing children after Failure/Aborted."""
        statuses: list[StageStatus] = []
        index = 0
        try:
            for index, child in enumerate(stages):
                status = await self._run_stage(state, child, scope)
                statuses.append(status)
                if status.is_failing:
                    for rest in stages[index + 1 :]:
                        self._skip_subtree(state, rest, f"Skipped after '{child.id}' {status.value}")
                    break
        except asyncio.CancelledError:
            for rest in stages[index + 1 :]:
                self._skip_subtree(state, rest, "Skipped after cancellation")
            raise
        return aggregate_status(statuses)

    async def _run_parallel(
        self,
        state: _RunState,
        stage: StageDefinition,
        scope: EnvironmentContext,
    ) -> StageStatus:
        """Run children concurrently behind a join (or fail-fast) barrier."""
        tasks = {
            asyncio.create_task(
                self._run_stage(state, child, scope),
                name=f"conveyor-{state.run_id}-{child.id}",
            ): child
            for child in stage.stages
        }
        try:
            pending: set[asyncio.Task] = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                failed = [tasks[t].id for t in done if self._branch_failed(state, tasks[t], t)]
                if stage.fail_fast and failed and pending:
                    logger.info(
                        "Parallel stage '%s' failing fast after '%s'; cancelling %d branch(es) (run %s)",
                        stage.id,
                        failed[0],
                        len(pending),
                        state.run_id,
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.wait(pending)
                    for task in pending:
                        self._branch_failed(state, tasks[task], task)
                    pending = set()
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.wait(tasks)
            raise

        return aggregate_status([state.results[child.id].status for child in stage.stages])

    def _branch_failed(
        self,
        state: _RunState,
        child: StageDefinition,
        task: asyncio.Task,
    ) -> bool:
        """Inspect a finished branch task; unexpected errors become Failure."""
        result = state.results[child.id]
        if task.cancelled():
            if not result.status.is_terminal:
                result.finish(StageStatus.ABORTED, "Cancelled")
            return True
        exc = task.exception()
        if exc is not None:
            logger.error("Branch '%s' raised (run %s)", child.id, state.run_id, exc_info=exc)
            result.finish(StageStatus.FAILURE, f"Internal error: {exc}")
            return True
        return task.result().is_failing

    async def _run_leaf(
        self,
        state: _RunState,
        stage: StageDefinition,
        scope: EnvironmentContext,
    ) -> StageStatus:
        action = stage.action
        if isinstance(action, ApprovalAction):
            return await self._run_approval(state, stage, action, scope)
        assert isinstance(action, TaskAction)

        result = state.results[stage.id]
        task_scope = scope
        if action.environment:
            task_scope = scope.child(f"{stage.id}:task")
            try:
                await task_scope.apply(action.environment, self._runner)
            except EnvironmentResolutionError as exc:
                result.message = str(exc)
                return StageStatus.FAILURE
        workdir = scope.expand(action.workdir) if action.workdir else None

        try:
            if self._task_slots is None:
                outcome = await self._runner.run(action.command, task_scope.as_dict(), workdir)
            else:
                await self._acquire_task_slot(result)
                try:
                    outcome = await self._runner.run(action.command, task_scope.as_dict(), workdir)
                finally:
                    self._task_slots.release()
        except Exception as exc:
            logger.exception("Stage '%s' task runner raised (run %s)", stage.id, state.run_id)
            result.message = f"Task runner error: {exc}"
            return StageStatus.FAILURE

        result.output = outcome.output
        result.outputs["exit_code"] = outcome.exit_code
        if outcome.exit_code == 0:
            return StageStatus.SUCCESS
        if stage.non_critical:
            result.message = f"Exited with {outcome.exit_code} (non-critical)"
            return StageStatus.UNSTABLE
        result.message = f"Exited with {outcome.exit_code}"
        return StageStatus.FAILURE

    async def _acquire_task_slot(self, result: StageResult) -> None:
        assert self._task_slots is not None
        try:
            await self._task_slots.acquire()
        except asyncio.CancelledError:
            result.message = "Cancelled before start (waiting for a task slot)"
            raise

    async def _run_approval(
        self,
        state: _RunState,
        stage: StageDefinition,
        action: ApprovalAction,
        scope: EnvironmentContext,
    ) -> StageStatus:
        result = state.results[stage.id]
        request = ApprovalRequest(
            run_id=state.run_id,
            stage_id=stage.id,
            message=scope.expand(action.message),
            allowed_submitters=frozenset(action.submitters),
            fields=dict(action.fields),
            timeout=action.timeout_seconds(),
        )
        outcome = await self._approvals.request(request)

        result.outputs.update(outcome.fields)
        result.outputs["decision"] = outcome.decision.value
        if outcome.submitter:
            result.outputs["submitter"] = outcome.submitter
        if outcome.fields:
            result.output = "\n".join(f"{name}={value}" for name, value in outcome.fields.items())

        match outcome.decision:
            case ApprovalDecision.APPROVED:
                return StageStatus.SUCCESS
            case ApprovalDecision.REJECTED:
                result.message = outcome.reason or "Rejected"
                return StageStatus.FAILURE
            case _:
                result.message = outcome.reason or "Approval timed out"
                return StageStatus.ABORTED

    def _skip_subtree(self, state: _RunState, stage: StageDefinition, reason: str) -> None:
        for node in stage.walk():
            result = state.results[node.id]
            if result.status == StageStatus.PENDING:
                result.finish(StageStatus.SKIPPED, reason)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _walk_with_parent(
    stages: list[StageDefinition],
    parent_id: str | None,
) -> Iterator[tuple[StageDefinition, str | None]]:
    for stage in stages:
        yield stage, parent_id
        yield from _walk_with_parent(stage.stages, stage.id)
