"""Tests for pipeline models — definition validation, aggregation, durations."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from conveyor.pipeline.models import (
    ApprovalAction,
    ApprovalRequest,
    ParameterDefinition,
    PipelineDefinition,
    PipelineKey,
    PostHooks,
    RunParameters,
    StageDefinition,
    StageKind,
    StageStatus,
    TaskAction,
    TaskHook,
    WebhookHook,
    aggregate_status,
    parse_duration_seconds,
)


# ── Aggregation ──────────────────────────────────────────────────────────────


class TestAggregateStatus:
    def test_empty_is_success(self):
        assert aggregate_status([]) == StageStatus.SUCCESS

    def test_all_skipped_is_success(self):
        assert aggregate_status([StageStatus.SKIPPED, StageStatus.SKIPPED]) == StageStatus.SUCCESS

    def test_skipped_does_not_participate(self):
        assert (
            aggregate_status([StageStatus.SKIPPED, StageStatus.UNSTABLE, StageStatus.SUCCESS])
            == StageStatus.UNSTABLE
        )

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([StageStatus.SUCCESS, StageStatus.UNSTABLE], StageStatus.UNSTABLE),
            ([StageStatus.UNSTABLE, StageStatus.FAILURE], StageStatus.FAILURE),
            ([StageStatus.FAILURE, StageStatus.ABORTED], StageStatus.ABORTED),
            ([StageStatus.ABORTED, StageStatus.SUCCESS], StageStatus.ABORTED),
        ],
    )
    def test_precedence(self, statuses, expected):
        assert aggregate_status(statuses) == expected
        assert aggregate_status(list(reversed(statuses))) == expected

    def test_exit_codes(self):
        assert StageStatus.SUCCESS.exit_code == 0
        assert StageStatus.UNSTABLE.exit_code == 1
        assert StageStatus.FAILURE.exit_code == 2
        assert StageStatus.ABORTED.exit_code == 3


# ── Stage Definitions ────────────────────────────────────────────────────────


class TestStageDefinition:
    def test_run_shorthand(self):
        stage = StageDefinition.model_validate({"id": "build", "run": "make"})
        assert stage.kind == StageKind.LEAF
        assert isinstance(stage.action, TaskAction)
        assert stage.action.command == "make"

    def test_approval_shorthand(self):
        stage = StageDefinition.model_validate(
            {"id": "gate", "approval": {"submitters": ["ops"], "timeout": "1h"}}
        )
        assert isinstance(stage.action, ApprovalAction)
        assert stage.action.submitters == ["ops"]
        assert stage.action.timeout_seconds() == 3600

    def test_group_kind_defaults_to_sequential(self):
        stage = StageDefinition.model_validate(
            {"id": "group", "stages": [{"id": "a", "run": "a"}]}
        )
        assert stage.kind == StageKind.SEQUENTIAL
        assert stage.is_group
        assert [s.id for s in stage.walk()] == ["group", "a"]

    def test_leaf_requires_action(self):
        with pytest.raises(ValidationError, match="require an action"):
            StageDefinition.model_validate({"id": "empty"})

    def test_group_requires_children(self):
        with pytest.raises(ValidationError, match="at least one stage"):
            StageDefinition.model_validate({"id": "fan", "kind": "parallel", "stages": []})

    def test_group_cannot_have_action(self):
        with pytest.raises(ValidationError, match="cannot have an action"):
            StageDefinition.model_validate(
                {"id": "g", "kind": "sequential", "run": "x", "stages": [{"id": "a", "run": "a"}]}
            )

    def test_fail_fast_only_on_parallel(self):
        with pytest.raises(ValidationError, match="fail_fast"):
            StageDefinition.model_validate(
                {"id": "g", "fail_fast": True, "stages": [{"id": "a", "run": "a"}]}
            )

    def test_non_critical_only_on_leaf(self):
        with pytest.raises(ValidationError, match="non_critical"):
            StageDefinition.model_validate(
                {"id": "g", "non_critical": True, "stages": [{"id": "a", "run": "a"}]}
            )

    def test_invalid_id(self):
        with pytest.raises(ValidationError, match="must match pattern"):
            StageDefinition.model_validate({"id": "1bad", "run": "x"})

    def test_run_and_approval_conflict(self):
        with pytest.raises(ValidationError, match="cannot be combined"):
            StageDefinition.model_validate({"id": "x", "run": "a", "approval": {}})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            StageDefinition.model_validate({"id": "x", "run": "a", "retries": 3})

    def test_invalid_timeout(self):
        with pytest.raises(ValidationError, match="Invalid duration"):
            StageDefinition.model_validate({"id": "x", "run": "a", "timeout": "soon"})


class TestPipelineDefinition:
    def test_duplicate_stage_ids_across_tree(self):
        with pytest.raises(ValidationError, match="Duplicate stage IDs"):
            PipelineDefinition.model_validate(
                {
                    "name": "p",
                    "stages": [
                        {"id": "a", "run": "a"},
                        {"id": "g", "stages": [{"id": "a", "run": "again"}]},
                    ],
                }
            )

    def test_requires_stages(self):
        with pytest.raises(ValidationError):
            PipelineDefinition.model_validate({"name": "p", "stages": []})

    def test_get_stage_and_walk(self):
        definition = PipelineDefinition.model_validate(
            {
                "name": "p",
                "stages": [
                    {"id": "a", "run": "a"},
                    {"id": "g", "kind": "parallel", "stages": [{"id": "b", "run": "b"}]},
                ],
            }
        )
        assert [s.id for s in definition.walk()] == ["a", "g", "b"]
        assert definition.get_stage("b").action.command == "b"
        assert definition.get_stage("missing") is None

    def test_duplicate_parameters(self):
        with pytest.raises(ValidationError, match="Duplicate parameter names"):
            PipelineDefinition.model_validate(
                {
                    "name": "p",
                    "parameters": [{"name": "X"}, {"name": "X"}],
                    "stages": [{"id": "a", "run": "a"}],
                }
            )


class TestParameters:
    def test_choice_defaults_to_first(self):
        param = ParameterDefinition(name="T", type="choice", choices=["a", "b"])
        assert param.effective_default() == "a"

    def test_boolean_defaults_to_false(self):
        assert ParameterDefinition(name="B", type="boolean").effective_default() is False

    def test_choice_default_must_be_valid(self):
        with pytest.raises(ValidationError, match="not a valid choice"):
            ParameterDefinition(name="T", type="choice", choices=["a"], default="z")

    def test_choices_only_for_choice(self):
        with pytest.raises(ValidationError, match="only choice parameters"):
            ParameterDefinition(name="S", choices=["a"])

    def test_run_parameters_as_environment(self):
        params = RunParameters(values={"FLAG": True, "NAME": "x", "EMPTY": None})
        assert params.as_environment() == {"FLAG": "true", "NAME": "x"}
        assert "EMPTY" in params
        assert params.get("NAME") == "x"


class TestPostHooks:
    def test_string_and_url_shorthands(self):
        hooks = PostHooks.model_validate(
            {"always": ["echo done"], "failure": [{"url": "http://hooks.test/ci"}]}
        )
        assert isinstance(hooks.always[0], TaskHook)
        assert hooks.always[0].label == "echo done"
        assert isinstance(hooks.failure[0], WebhookHook)


# ── Runtime Models ───────────────────────────────────────────────────────────


class TestRuntimeModels:
    def test_pipeline_key_is_hashable(self):
        a = PipelineKey(pipeline="web", branch="main")
        b = PipelineKey(pipeline="web", branch="main")
        assert a == b
        assert len({a, b}) == 1
        assert str(a) == "web/main"

    def test_approval_request_submitters(self):
        open_request = ApprovalRequest(run_id="r", stage_id="s", message="ok?")
        assert open_request.is_allowed("anyone")

        restricted = ApprovalRequest(
            run_id="r", stage_id="s", message="ok?", allowed_submitters=frozenset({"ops"})
        )
        assert restricted.is_allowed("ops")
        assert not restricted.is_allowed("dev")


class TestDurations:
    @pytest.mark.parametrize(
        "value,seconds",
        [(30, 30.0), (0.5, 0.5), ("500ms", 0.5), ("45s", 45.0), ("5m", 300.0), ("2h", 7200.0), ("1d", 86400.0)],
    )
    def test_parse(self, value, seconds):
        assert parse_duration_seconds(value) == pytest.approx(seconds)

    @pytest.mark.parametrize("value", ["", "10", "5 minutes", "-1s", 0, -3, True])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration_seconds(value)
