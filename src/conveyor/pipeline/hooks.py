"""Post-run hook dispatch — table-driven, result-conditioned actions.

Firing rules (dispatch order):

    ==========  =============================================
    always      every run, including aborted ones
    success     aggregate status is Success
    unstable    aggregate status is Unstable
    failure     aggregate status is Failure or Aborted
    changed     status differs from the previous run's status
                (never fires when there is no previous run)
    ==========  =============================================

Hook failures are recorded as :class:`HookResult` entries and logged; they
never re-run stages or alter the already-final run status.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Mapping

import httpx

from conveyor.pipeline.models import (
    HookClass,
    HookResult,
    PostHooks,
    RunResult,
    StageStatus,
    TaskHook,
    WebhookHook,
)
from conveyor.pipeline.runner import TaskRunner

logger = logging.getLogger("conveyor.pipeline.hooks")

HookCallback = Callable[[RunResult, "RunResult | None"], Awaitable[None]]

_STATUS_CLASS: dict[StageStatus, HookClass] = {
    StageStatus.SUCCESS: HookClass.SUCCESS,
    StageStatus.UNSTABLE: HookClass.UNSTABLE,
    StageStatus.FAILURE: HookClass.FAILURE,
    StageStatus.ABORTED: HookClass.FAILURE,
}


def classes_to_fire(result: RunResult, previous: RunResult | None) -> list[HookClass]:
    """Return the hook classes that apply to ``result``, in dispatch order."""
    classes = [HookClass.ALWAYS]
    status_class = _STATUS_CLASS.get(result.status)
    if status_class is not None:
        classes.append(status_class)
    if previous is not None and previous.status != result.status:
        classes.append(HookClass.CHANGED)
    return classes


class HookDispatcher:
    """Runs the hook sets that match a finished run.

    Hooks come from two places: the definition's ``post`` block (task and
    webhook hooks) and callbacks registered in code, e.g. chat or email
    notifiers. Definition hooks of a class run before registered callbacks
    of the same class.
    """

    def __init__(
        self,
        runner: TaskRunner,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._runner = runner
        self._http_client = http_client
        self._callbacks: dict[HookClass, list[tuple[str, HookCallback]]] = {
            hook_class: [] for hook_class in HookClass
        }

    def register(
        self,
        hook_class: HookClass,
        callback: HookCallback,
        *,
        name: str | None = None,
    ) -> None:
        """Register a callback for a hook class."""
        label = name or getattr(callback, "__name__", repr(callback))
        self._callbacks[hook_class].append((label, callback))

    async def dispatch(
        self,
        result: RunResult,
        previous: RunResult | None,
        *,
        hooks: PostHooks | None = None,
        env: Mapping[str, str] | None = None,
    ) -> list[HookResult]:
        """Run every matching hook once. Never raises for hook failures."""
        hooks = hooks or PostHooks()
        hook_env = dict(env or {})
        hook_env["RUN_STATUS"] = result.status.value.upper()
        hook_env["PREVIOUS_STATUS"] = previous.status.value.upper() if previous else ""

        outcomes: list[HookResult] = []
        for hook_class in classes_to_fire(result, previous):
            for hook in hooks.for_class(hook_class):
                if isinstance(hook, WebhookHook):
                    outcome = await self._run_webhook(hook_class, hook, result, previous)
                else:
                    outcome = await self._run_task(hook_class, hook, hook_env)
                outcomes.append(outcome)
            for label, callback in self._callbacks[hook_class]:
                outcomes.append(await self._run_callback(hook_class, label, callback, result, previous))

        failed = [o for o in outcomes if not o.success]
        logger.info(
            "Dispatched %d hook(s) for run %s (%s), %d failed",
            len(outcomes),
            result.run_id,
            result.status.value,
            len(failed),
        )
        return outcomes

    async def _run_task(
        self,
        hook_class: HookClass,
        hook: TaskHook,
        env: Mapping[str, str],
    ) -> HookResult:
        try:
            outcome = await self._runner.run(hook.command, env, hook.workdir)
        except Exception as exc:
            logger.exception("Hook '%s' (%s) raised", hook.label, hook_class.value)
            return HookResult(hook_class=hook_class, name=hook.label, success=False, error=str(exc))
        if outcome.exit_code != 0:
            logger.warning(
                "Hook '%s' (%s) exited with %d", hook.label, hook_class.value, outcome.exit_code
            )
            return HookResult(
                hook_class=hook_class,
                name=hook.label,
                success=False,
                error=f"exit code {outcome.exit_code}",
            )
        return HookResult(hook_class=hook_class, name=hook.label, success=True)

    async def _run_webhook(
        self,
        hook_class: HookClass,
        hook: WebhookHook,
        result: RunResult,
        previous: RunResult | None,
    ) -> HookResult:
        payload = run_summary(result, previous)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    hook.url, json=payload, headers=hook.headers, timeout=hook.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=hook.timeout) as client:
                    response = await client.post(hook.url, json=payload, headers=hook.headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook hook '%s' (%s) failed: %s", hook.label, hook_class.value, exc)
            return HookResult(hook_class=hook_class, name=hook.label, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Webhook hook '%s' (%s) raised", hook.label, hook_class.value)
            return HookResult(hook_class=hook_class, name=hook.label, success=False, error=str(exc))
        return HookResult(hook_class=hook_class, name=hook.label, success=True)

    async def _run_callback(
        self,
        hook_class: HookClass,
        label: str,
        callback: HookCallback,
        result: RunResult,
        previous: RunResult | None,
    ) -> HookResult:
        try:
            await callback(result, previous)
        except Exception as exc:
            logger.exception("Hook callback '%s' (%s) raised", label, hook_class.value)
            return HookResult(hook_class=hook_class, name=label, success=False, error=str(exc))
        return HookResult(hook_class=hook_class, name=label, success=True)


def run_summary(result: RunResult, previous: RunResult | None = None) -> dict:
    """Compact JSON-serializable view of a run for notifications."""
    return {
        "run_id": result.run_id,
        "pipeline": result.key.pipeline,
        "branch": result.key.branch,
        "build_number": result.build_number,
        "status": result.status.value,
        "previous_status": previous.status.value if previous else None,
        "duration_ms": result.duration_ms,
        "timestamp": result.timestamp.isoformat(),
        "stages": [{"id": s.stage_id, "status": s.status.value} for s in result.stages],
    }
