"""Conveyor Server — FastAPI application exposing triggers, approvals and runs.

Startup sequence:
1. Load pipeline definitions (fail closed: any invalid file aborts startup)
2. Open the SQLite build history
3. Build the Task Runner and the Pipeline Engine
4. Begin accepting requests

Shutdown:
1. Abort active runs and wait for their hooks and history records
2. Close the database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from pydantic import BaseModel

from conveyor.config import ConveyorConfig, load_config
from conveyor.pipeline import (
    ApprovalForbidden,
    ApprovalNotPending,
    ConcurrentRunRejected,
    ParameterInvalid,
    PipelineEngine,
    PipelineKey,
    ShellTaskRunner,
    SqliteBuildHistory,
    TaskRunner,
    UnknownRun,
    load_definitions,
)
from conveyor.security import (
    Principal,
    get_security_config,
    require_approver,
    require_gate_reader,
    require_operator,
)

logger = logging.getLogger(__name__)


class TriggerRequest(BaseModel):
    branch: str = "main"
    parameters: dict[str, Any] = {}


class InputRequest(BaseModel):
    submitter: str | None = None
    fields: dict[str, str] = {}
    approve: bool = True


class ConveyorServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config: ConveyorConfig, *, runner: TaskRunner | None = None):
        self.config = config
        self._runner_override = runner

        # Components (initialized in start())
        self.db: aiosqlite.Connection | None = None
        self.history: SqliteBuildHistory | None = None
        self.engine: PipelineEngine | None = None

    async def start(self) -> None:
        """Initialize all components."""
        logger.info("Conveyor server starting")

        # 1. Pipeline definitions
        definitions = load_definitions(Path(self.config.pipelines_dir))

        # 2. Build history
        db_path = Path(self.config.database)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(str(db_path))
        self.history = SqliteBuildHistory(self.db, num_to_keep=self.config.retention.num_to_keep)
        await self.history.initialize()
        logger.info("Build history DB path: %s", db_path)

        # 3. Engine
        runner = self._runner_override or ShellTaskRunner(
            shell=self.config.runner.shell,
            inherit_environment=self.config.runner.inherit_environment,
            kill_grace_seconds=self.config.runner.kill_grace_seconds,
        )
        self.engine = PipelineEngine(
            self.history,
            runner,
            default_run_timeout=self.config.default_run_timeout_seconds(),
            max_parallel_tasks=self.config.runner.max_parallel_tasks,
        )
        for definition in definitions.values():
            self.engine.add_pipeline(definition)

        logger.info(
            "Conveyor server started with %d pipeline(s): %s",
            len(definitions),
            sorted(definitions),
        )

    async def stop(self) -> None:
        """Graceful shutdown — abort active runs, then close the database."""
        logger.info("Conveyor server shutting down")

        if self.engine:
            active = self.engine.active_runs()
            for run in active:
                self.engine.abort_run(run.run_id, "Server shutting down")
            for run in active:
                try:
                    await self.engine.wait_for_run(run.run_id)
                except UnknownRun:
                    continue
                except Exception:
                    logger.exception("Run %s did not finish cleanly", run.run_id)
        if self.db:
            await self.db.close()

        logger.info("Conveyor server stopped")

    def require_engine(self) -> PipelineEngine:
        if self.engine is None:
            raise HTTPException(status_code=503, detail="Engine not available")
        return self.engine

    def require_history(self) -> SqliteBuildHistory:
        if self.history is None:
            raise HTTPException(status_code=503, detail="Build history not available")
        return self.history


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(
    config: ConveyorConfig | None = None,
    *,
    runner: TaskRunner | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    server = ConveyorServer(config or load_config(), runner=runner)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="Conveyor",
        version="0.1.0",
        description="Declarative pipeline orchestration",
        lifespan=lifespan,
    )
    app.state.server = server

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        engine = server.engine
        return {
            "status": "ok",
            "pipelines": len(engine.list_pipelines()) if engine else 0,
            "active_runs": len(engine.active_runs()) if engine else 0,
            "security": get_security_config(),
        }

    router = APIRouter(dependencies=[Depends(require_operator)])

    # ── Pipelines ────────────────────────────────────────────────────────────

    @router.get("/pipelines")
    async def list_pipelines():
        """List loaded pipeline definitions."""
        engine = server.require_engine()
        return {
            "pipelines": [
                {
                    "name": p.name,
                    "description": p.description,
                    "parameters": [param.model_dump(mode="json") for param in p.parameters],
                    "stages": [s.id for s in p.walk()],
                }
                for p in engine.list_pipelines()
            ]
        }

    @router.post("/pipelines/{name}/runs", status_code=status.HTTP_202_ACCEPTED)
    async def trigger_run(name: str, body: TriggerRequest):
        """Start a run. Rejected (not queued) while the same key is running."""
        engine = server.require_engine()
        definition = engine.get_pipeline(name)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"Pipeline '{name}' not found")

        key = PipelineKey(pipeline=name, branch=body.branch)
        try:
            run_id = engine.submit_run(key, definition, body.parameters)
        except ParameterInvalid as e:
            raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
        except ConcurrentRunRejected as e:
            raise HTTPException(
                status_code=409,
                detail={"message": str(e), "active_run_id": e.active_run_id},
            )
        return {"run_id": run_id, "pipeline": name, "branch": body.branch}

    @router.get("/pipelines/{name}/runs")
    async def list_runs(
        name: str,
        branch: str = Query("main"),
        limit: int = Query(20, ge=1, le=500),
    ):
        """Recent finished runs of a pipeline on a branch."""
        history = server.require_history()
        runs = await history.list_runs(PipelineKey(pipeline=name, branch=branch), limit=limit)
        return {"runs": [r.model_dump(mode="json", exclude={"stages", "hooks"}) for r in runs]}

    # ── Runs ─────────────────────────────────────────────────────────────────

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str):
        """A run's live state while active, else its recorded result."""
        engine = server.require_engine()
        result = engine.get_active_run(run_id)
        if result is None:
            result = await server.require_history().get_run(run_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return result.model_dump(mode="json")

    @router.post("/runs/{run_id}/abort", status_code=status.HTTP_202_ACCEPTED)
    async def abort_run(run_id: str):
        engine = server.require_engine()
        if engine.get_active_run(run_id) is None:
            raise HTTPException(status_code=404, detail=f"No active run {run_id}")
        accepted = engine.abort_run(run_id)
        return {"run_id": run_id, "aborted": accepted}

    # ── Approvals ────────────────────────────────────────────────────────────

    @app.get("/approvals", dependencies=[Depends(require_gate_reader)])
    async def list_approvals(run_id: str | None = Query(None)):
        """Open approval gates."""
        engine = server.require_engine()
        return {
            "approvals": [
                {
                    "run_id": r.run_id,
                    "stage_id": r.stage_id,
                    "message": r.message,
                    "submitters": sorted(r.allowed_submitters),
                    "fields": r.fields,
                    "timeout": r.timeout,
                }
                for r in engine.approvals.pending(run_id)
            ]
        }

    @app.post("/runs/{run_id}/stages/{stage_id}/input")
    async def submit_input(
        run_id: str,
        stage_id: str,
        body: InputRequest,
        principal: Principal = Depends(require_approver),
    ):
        """Answer an approval gate.

        An approver token fixes the submitter identity; a body ``submitter``
        naming someone else is refused.
        """
        engine = server.require_engine()
        if principal.identity and body.submitter not in (None, principal.identity):
            raise HTTPException(
                status_code=403,
                detail=f"Token belongs to '{principal.identity}', not '{body.submitter}'",
            )
        submitter = principal.identity or body.submitter
        if not submitter:
            raise HTTPException(status_code=422, detail="submitter is required")
        try:
            outcome = engine.approvals.submit(
                run_id, stage_id, submitter, body.fields, approve=body.approve
            )
        except ApprovalNotPending as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ApprovalForbidden as e:
            raise HTTPException(status_code=403, detail=str(e))
        return outcome.model_dump(mode="json")

    app.include_router(router)
    return app
