"""Hierarchical environment scopes for pipeline runs.

A run owns one global scope; every Running stage gets a short-lived child
scope whose parent is the scope of its enclosing group. Lookups walk the
chain outward and never mutate ancestors. The global scope is frozen once
the run starts, so stage-local overlays are the only writable state and are
visible only to the subtree of the stage that created them.
"""

from __future__ import annotations

import logging
import re
from typing import Iterator, Mapping

from conveyor.pipeline.errors import EnvironmentResolutionError
from conveyor.pipeline.models import ComputedValue, EnvValue
from conveyor.pipeline.runner import TaskRunner

logger = logging.getLogger("conveyor.pipeline.environment")

# ${NAME} references inside environment values
_REFERENCE_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class EnvironmentContext:
    """One scope in the environment chain.

    Usage::

        root = EnvironmentContext({"APP": "web"}, owner="global").freeze()
        scope = root.child("build")
        await scope.apply({"IMAGE": "${APP}:latest"}, runner)
        scope.get("IMAGE")  # "web:latest"
    """

    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        *,
        parent: EnvironmentContext | None = None,
        owner: str = "global",
    ):
        self._parent = parent
        self._owner = owner
        self._local: dict[str, str] = {}
        self._frozen = False
        for name, value in (values or {}).items():
            self._local[name] = str(value)

    # ── Structure ────────────────────────────────────────────────────────────

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def parent(self) -> EnvironmentContext | None:
        return self._parent

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> EnvironmentContext:
        """Make this scope read-only. Returns self for chaining."""
        self._frozen = True
        return self

    def child(self, owner: str, values: Mapping[str, str] | None = None) -> EnvironmentContext:
        """Create a scope that shadows this one."""
        return EnvironmentContext(values, parent=self, owner=owner)

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get(self, name: str, default: str | None = None) -> str | None:
        scope: EnvironmentContext | None = self
        while scope is not None:
            if name in scope._local:
                return scope._local[name]
            scope = scope._parent
        return default

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.as_dict())

    def local(self) -> dict[str, str]:
        """Return a copy of only this scope's overlay."""
        return dict(self._local)

    def as_dict(self) -> dict[str, str]:
        """Return the effective merged environment (nearest scope wins)."""
        chain: list[EnvironmentContext] = []
        scope: EnvironmentContext | None = self
        while scope is not None:
            chain.append(scope)
            scope = scope._parent
        merged: dict[str, str] = {}
        for scope in reversed(chain):
            merged.update(scope._local)
        return merged

    # ── Mutation (owning stage only) ─────────────────────────────────────────

    def set(self, name: str, value: str) -> None:
        if self._frozen:
            msg = f"Environment scope '{self._owner}' is read-only"
            raise RuntimeError(msg)
        self._local[name] = str(value)

    def expand(self, text: str) -> str:
        """Substitute ``${NAME}`` references with visible values."""

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            value = self.get(name)
            if value is None:
                logger.warning(
                    "Unknown environment reference '${%s}' in scope '%s'", name, self._owner
                )
                return ""
            return value

        return _REFERENCE_RE.sub(_replace, text)

    async def apply(
        self,
        values: Mapping[str, EnvValue],
        runner: TaskRunner | None = None,
        *,
        workdir: str | None = None,
    ) -> None:
        """Populate this scope from a definition ``environment`` block.

        Entries are applied in order, so later values may reference earlier
        ones. Computed values run through ``runner`` with the environment
        visible so far; their output is trimmed of trailing whitespace.

        Raises:
            EnvironmentResolutionError: If a computed value cannot be produced.
        """
        for name, value in values.items():
            if isinstance(value, ComputedValue):
                self.set(name, await self._compute(name, value, runner, workdir))
            elif isinstance(value, bool):
                self.set(name, "true" if value else "false")
            elif isinstance(value, str):
                self.set(name, self.expand(value))
            else:
                self.set(name, str(value))

    async def _compute(
        self,
        name: str,
        value: ComputedValue,
        runner: TaskRunner | None,
        workdir: str | None,
    ) -> str:
        if runner is None:
            raise EnvironmentResolutionError(name, "no task runner available for computed value")
        try:
            outcome = await runner.run(value.command, self.as_dict(), workdir)
        except OSError as exc:
            raise EnvironmentResolutionError(name, str(exc)) from exc
        if outcome.exit_code != 0:
            raise EnvironmentResolutionError(
                name, f"command exited with {outcome.exit_code}: {value.command}"
            )
        return outcome.output.rstrip()

    def __repr__(self) -> str:
        return f"EnvironmentContext(owner={self._owner!r}, local={self._local!r})"
