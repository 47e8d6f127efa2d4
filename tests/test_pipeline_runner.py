"""Tests for ShellTaskRunner — real subprocesses through /bin/sh."""

from __future__ import annotations

import asyncio
import time

import pytest

from conveyor.pipeline.runner import ShellTaskRunner


@pytest.fixture
def runner():
    return ShellTaskRunner(kill_grace_seconds=1.0)


class TestShellTaskRunner:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self, runner):
        outcome = await runner.run("echo hello; echo oops >&2; exit 3", {})
        assert outcome.exit_code == 3
        assert not outcome.succeeded
        assert "hello" in outcome.output
        assert "oops" in outcome.output

    @pytest.mark.asyncio
    async def test_environment_and_workdir(self, runner, tmp_path):
        outcome = await runner.run('echo "$GREETING"; pwd -P', {"GREETING": "hi"}, str(tmp_path))
        lines = outcome.output.splitlines()
        assert outcome.succeeded
        assert lines[0] == "hi"
        assert lines[1] == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_isolated_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONVEYOR_TEST_LEAK", "leaked")
        runner = ShellTaskRunner(inherit_environment=False)
        outcome = await runner.run('echo "[$CONVEYOR_TEST_LEAK]"', {})
        assert outcome.output == "[]"

    @pytest.mark.asyncio
    async def test_missing_workdir_raises(self, runner, tmp_path):
        with pytest.raises(OSError):
            await runner.run("true", {}, str(tmp_path / "missing"))

    @pytest.mark.asyncio
    async def test_output_is_truncated(self, tmp_path):
        runner = ShellTaskRunner(max_output_chars=10)
        outcome = await runner.run("printf '%s' 0123456789abcdef", {})
        assert outcome.output == "6789abcdef"

    @pytest.mark.asyncio
    async def test_cancellation_kills_process_group(self, runner, tmp_path):
        marker = tmp_path / "finished"
        task = asyncio.create_task(runner.run(f"sleep 5 && touch {marker}", {}))
        await asyncio.sleep(0.2)

        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert time.monotonic() - started < 3
        assert not marker.exists()
