"""Approval gates — suspend a stage until authorized input arrives.

The engine calls :meth:`ApprovalBroker.request` from the gate's leaf stage;
the call awaits an :class:`asyncio.Future` that is resolved by
:meth:`ApprovalBroker.submit` (from the HTTP surface, the CLI, or tests) or
by the gate's timeout. Only the gate's own stage is suspended; sibling
parallel branches keep running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping

from conveyor.pipeline.errors import ApprovalForbidden, ApprovalNotPending
from conveyor.pipeline.models import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRequest,
)

logger = logging.getLogger("conveyor.pipeline.approvals")

RequestListener = Callable[[ApprovalRequest], Awaitable[None] | None]


class ApprovalBroker:
    """Tracks open approval requests and routes submissions to them."""

    def __init__(self) -> None:
        self._pending: dict[tuple[str, str], tuple[ApprovalRequest, asyncio.Future]] = {}
        self._listeners: list[RequestListener] = []

    def add_listener(self, listener: RequestListener) -> None:
        """Register a callback invoked whenever a new request opens."""
        self._listeners.append(listener)

    def pending(self, run_id: str | None = None) -> list[ApprovalRequest]:
        """Return open requests, optionally for one run."""
        return [
            request
            for (rid, _), (request, _) in self._pending.items()
            if run_id is None or rid == run_id
        ]

    def is_pending(self, run_id: str, stage_id: str) -> bool:
        return (run_id, stage_id) in self._pending

    async def request(self, request: ApprovalRequest) -> ApprovalOutcome:
        """Suspend until the gate is answered or its timeout elapses.

        Cancellation of the awaiting task closes the request and propagates.
        """
        key = (request.run_id, request.stage_id)
        if key in self._pending:
            msg = f"Approval already pending for run {request.run_id} stage '{request.stage_id}'"
            raise RuntimeError(msg)

        future: asyncio.Future[ApprovalOutcome] = asyncio.get_running_loop().create_future()
        self._pending[key] = (request, future)
        logger.info(
            "Approval requested for stage '%s' (run %s): %s",
            request.stage_id,
            request.run_id,
            request.message,
        )
        try:
            await self._notify(request)
            if request.timeout is None:
                return await future
            return await asyncio.wait_for(asyncio.shield(future), timeout=request.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Approval for stage '%s' timed out after %ss (run %s)",
                request.stage_id,
                request.timeout,
                request.run_id,
            )
            return ApprovalOutcome(
                decision=ApprovalDecision.TIMED_OUT,
                reason=f"No input within {request.timeout}s",
            )
        finally:
            self._pending.pop(key, None)
            if not future.done():
                future.cancel()

    def submit(
        self,
        run_id: str,
        stage_id: str,
        submitter: str,
        fields: Mapping[str, str] | None = None,
        *,
        approve: bool = True,
    ) -> ApprovalOutcome:
        """Answer an open gate.

        Raises:
            ApprovalNotPending: If no gate is open (never opened, answered, or timed out).
            ApprovalForbidden: If ``submitter`` is not allowed; the gate is
                resolved as rejected before raising.
        """
        entry = self._pending.get((run_id, stage_id))
        if entry is None or entry[1].done():
            raise ApprovalNotPending(f"No approval pending for run {run_id} stage '{stage_id}'")
        request, future = entry

        if not request.is_allowed(submitter):
            outcome = ApprovalOutcome(
                decision=ApprovalDecision.REJECTED,
                submitter=submitter,
                reason=f"'{submitter}' is not an allowed submitter",
            )
            future.set_result(outcome)
            logger.warning(
                "Rejected input from '%s' for stage '%s' (run %s): not allowed",
                submitter,
                stage_id,
                run_id,
            )
            raise ApprovalForbidden(submitter, stage_id)

        if not approve:
            outcome = ApprovalOutcome(
                decision=ApprovalDecision.REJECTED,
                submitter=submitter,
                reason=f"Declined by '{submitter}'",
            )
        else:
            values = {name: str((fields or {}).get(name, "")) for name in request.fields}
            outcome = ApprovalOutcome(
                decision=ApprovalDecision.APPROVED,
                submitter=submitter,
                fields=values,
            )
        future.set_result(outcome)
        logger.info(
            "Stage '%s' %s by '%s' (run %s)",
            stage_id,
            outcome.decision.value,
            submitter,
            run_id,
        )
        return outcome

    async def _notify(self, request: ApprovalRequest) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(request)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Approval listener failed for stage '%s'", request.stage_id)
