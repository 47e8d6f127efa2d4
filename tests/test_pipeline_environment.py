"""Tests for EnvironmentContext — scope chain, freezing, expansion, computed values."""

from __future__ import annotations

import pytest

from conveyor.pipeline.environment import EnvironmentContext
from conveyor.pipeline.errors import EnvironmentResolutionError
from conveyor.pipeline.models import ComputedValue
from conveyor.pipeline.runner import TaskOutcome


class EchoRunner:
    def __init__(self, exit_code: int = 0, output: str = "value\n"):
        self.exit_code = exit_code
        self.output = output
        self.envs: list[dict[str, str]] = []

    async def run(self, command, env, workdir=None):
        self.envs.append(dict(env))
        return TaskOutcome(exit_code=self.exit_code, output=self.output)


class TestScopes:
    def test_child_shadows_parent_without_mutating_it(self):
        root = EnvironmentContext({"A": "1", "B": "2"}).freeze()
        child = root.child("stage")
        child.set("A", "override")

        assert child.get("A") == "override"
        assert child.get("B") == "2"
        assert root.get("A") == "1"
        assert child.as_dict() == {"A": "override", "B": "2"}
        assert child.local() == {"A": "override"}

    def test_siblings_are_isolated(self):
        root = EnvironmentContext({"A": "1"}).freeze()
        left = root.child("left")
        right = root.child("right")
        left.set("SIDE", "left")

        assert "SIDE" in left
        assert "SIDE" not in right

    def test_frozen_scope_rejects_writes(self):
        root = EnvironmentContext({"A": "1"}).freeze()
        with pytest.raises(RuntimeError, match="read-only"):
            root.set("A", "2")

    def test_getitem_missing(self):
        with pytest.raises(KeyError):
            EnvironmentContext()["NOPE"]


class TestApply:
    @pytest.mark.asyncio
    async def test_expansion_uses_earlier_keys_and_ancestors(self):
        root = EnvironmentContext({"APP": "web"}).freeze()
        scope = root.child("build")
        await scope.apply({"VERSION": "1.2", "TAG": "${APP}:${VERSION}", "DEBUG": False, "PORT": 3000})

        assert scope["TAG"] == "web:1.2"
        assert scope["DEBUG"] == "false"
        assert scope["PORT"] == "3000"

    @pytest.mark.asyncio
    async def test_unknown_reference_expands_empty(self):
        scope = EnvironmentContext()
        await scope.apply({"X": "a-${MISSING}-b"})
        assert scope["X"] == "a--b"

    @pytest.mark.asyncio
    async def test_computed_value(self):
        runner = EchoRunner(output="abc123\n\n")
        scope = EnvironmentContext({"APP": "web"})
        await scope.apply({"SHA": ComputedValue(command="git rev-parse HEAD")}, runner)

        assert scope["SHA"] == "abc123"
        assert runner.envs[0]["APP"] == "web"

    @pytest.mark.asyncio
    async def test_computed_value_failure(self):
        scope = EnvironmentContext()
        with pytest.raises(EnvironmentResolutionError, match="SHA"):
            await scope.apply({"SHA": ComputedValue(command="false")}, EchoRunner(exit_code=1))

    @pytest.mark.asyncio
    async def test_computed_value_without_runner(self):
        scope = EnvironmentContext()
        with pytest.raises(EnvironmentResolutionError):
            await scope.apply({"SHA": ComputedValue(command="x")})
