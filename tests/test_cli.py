"""Tests for the conveyor CLI — validate, run, history."""

from __future__ import annotations

import sys

import pytest

from conveyor.__main__ import EXIT_INVALID, _parse_params, main

PASSING = """
name: demo
stages:
  - id: build
    run: echo building
  - id: checks
    parallel:
      - {id: lint, run: "true"}
      - {id: test, run: "true"}
"""

FAILING = """
name: demo
stages:
  - {id: build, run: "exit 1"}
  - {id: deploy, run: "true"}
"""

UNSTABLE = """
name: demo
stages:
  - id: scan
    run: exit 1
    non_critical: true
"""

PARAMETERIZED = """
name: demo
parameters:
  - {name: TARGET, type: choice, choices: [staging, production]}
stages:
  - {id: deploy, run: "echo deploying to $TARGET"}
"""

GATED = """
name: demo
stages:
  - id: approve
    approval:
      message: Ship it?
      submitters: [ops]
  - {id: deploy, run: "true"}
"""


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("CONVEYOR_DATABASE", "CONVEYOR_PIPELINES_DIR", "CONVEYOR_NUM_TO_KEEP"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def invoke(tmp_path, monkeypatch):
    """Run ``main`` with the given arguments and return its exit code."""

    def _invoke(*args: str) -> int:
        monkeypatch.setattr(sys, "argv", ["conveyor", *args])
        with pytest.raises(SystemExit) as exc_info:
            main()
        return exc_info.value.code

    return _invoke


def write(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    return str(path)


def run_args(tmp_path, path, *extra):
    return ("run", path, "--database", str(tmp_path / "history.db"), *extra)


class TestParseParams:
    def test_pairs(self):
        assert _parse_params(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}

    @pytest.mark.parametrize("pair", ["novalue", "=1"])
    def test_malformed(self, pair):
        with pytest.raises(ValueError, match="NAME=VALUE"):
            _parse_params([pair])


class TestValidate:
    def test_valid_file(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", PASSING)
        assert invoke("validate", path) == 0
        assert "OK (demo, 4 stages)" in capsys.readouterr().out

    def test_invalid_file(self, invoke, tmp_path, capsys):
        good = write(tmp_path, "demo.yaml", PASSING)
        bad = write(tmp_path, "bad.yaml", "name: bad\nstages: []\n")

        assert invoke("validate", good, bad) == EXIT_INVALID

        captured = capsys.readouterr()
        assert "demo.yaml: OK" in captured.out
        assert "bad.yaml: INVALID" in captured.err


class TestRun:
    def test_success(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", PASSING)
        assert invoke(*run_args(tmp_path, path)) == 0

        out = capsys.readouterr().out
        assert "demo/main #1: SUCCESS" in out
        assert "  [ success] lint" in out

    def test_failure_skips_rest(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", FAILING)
        assert invoke(*run_args(tmp_path, path)) == 2

        out = capsys.readouterr().out
        assert "[ skipped] deploy" in out
        assert "FAILURE" in out

    def test_non_critical_failure_is_unstable(self, invoke, tmp_path):
        path = write(tmp_path, "demo.yaml", UNSTABLE)
        assert invoke(*run_args(tmp_path, path)) == 1

    def test_parameters(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", PARAMETERIZED)
        assert invoke(*run_args(tmp_path, path, "--param", "TARGET=production")) == 0

    def test_invalid_parameter(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", PARAMETERIZED)
        assert invoke(*run_args(tmp_path, path, "--param", "TARGET=moon")) == EXIT_INVALID
        assert "TARGET" in capsys.readouterr().err

    def test_malformed_parameter(self, invoke, tmp_path):
        path = write(tmp_path, "demo.yaml", PARAMETERIZED)
        assert invoke(*run_args(tmp_path, path, "--param", "TARGET")) == EXIT_INVALID

    def test_invalid_definition(self, invoke, tmp_path):
        path = write(tmp_path, "bad.yaml", "name: bad\nstages: []\n")
        assert invoke(*run_args(tmp_path, path)) == EXIT_INVALID

    def test_allowed_approver(self, invoke, tmp_path):
        path = write(tmp_path, "demo.yaml", GATED)
        assert invoke(*run_args(tmp_path, path, "--approver", "ops")) == 0

    def test_rejecting_approver(self, invoke, tmp_path):
        path = write(tmp_path, "demo.yaml", GATED)
        assert invoke(*run_args(tmp_path, path, "--approver", "ops", "--reject")) == 2

    def test_disallowed_approver(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", GATED)
        assert invoke(*run_args(tmp_path, path, "--approver", "dev")) == 2
        assert "Approval not accepted" in capsys.readouterr().err


class TestHistory:
    def test_lists_recorded_runs(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", FAILING)
        db = str(tmp_path / "history.db")
        invoke(*run_args(tmp_path, path))
        invoke(*run_args(tmp_path, path))
        capsys.readouterr()

        assert invoke("history", "demo", "--database", db) == 0

        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("#2")
        assert lines[1].startswith("#1")
        assert "failure" in lines[0]

    def test_other_branch_empty(self, invoke, tmp_path, capsys):
        path = write(tmp_path, "demo.yaml", PASSING)
        db = str(tmp_path / "history.db")
        invoke(*run_args(tmp_path, path))
        capsys.readouterr()

        assert invoke("history", "demo", "--branch", "dev", "--database", db) == 0
        assert "No runs recorded for demo/dev" in capsys.readouterr().out

    def test_missing_database(self, invoke, tmp_path):
        assert invoke("history", "demo", "--database", str(tmp_path / "none.db")) == 1


def test_no_command_prints_help(invoke, capsys):
    assert invoke() == 1
    assert "usage: conveyor" in capsys.readouterr().out
