from __future__ import annotations

from typing import Any, Dict

import pytest

from tier_runtime.core.contracts import Priority, StepPolicy, Tier
from tier_runtime.core.errors import ConfigValidationError
from tier_runtime.registry.models import AgentDescriptor, CommandDescriptor, SkillDescriptor, parse_duration_sec
from tier_runtime.registry.validator import apply_overrides, build_descriptor, validate_batch, validate_workflow
from tier_runtime.safety.capabilities import ALL, INVOKE_COMPONENT, READ, SEARCH, WRITE


def _skill(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {"tier": "skill", "name": "lint", "description": "Lint changed files"}
    data.update(overrides)
    return data


def _command(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {"tier": "command", "name": "review", "description": "Review the change", "agents": ["a", "b"]}
    data.update(overrides)
    return data


def test_build_skill_defaults() -> None:
    desc, warnings = build_descriptor(_skill())
    assert isinstance(desc, SkillDescriptor)
    assert desc.tools == frozenset({READ, SEARCH})
    assert desc.priority is Priority.MEDIUM
    assert desc.enabled is True
    assert warnings == []


def test_host_field_spellings_and_tool_names_are_normalized() -> None:
    desc, _ = build_descriptor(
        _skill(
            toolAllowList=["Read", "Grep", "Edit"],
            triggerKeywords="security, auth",
            filePatterns=["*.py"],
            priority="HIGH",
            timeout="500ms",
        )
    )
    assert desc.tools == frozenset({"read", "search", "edit"})
    assert desc.trigger_keywords == ["security", "auth"]
    assert desc.file_patterns == ["*.py"]
    assert desc.priority is Priority.HIGH
    assert desc.timeout == pytest.approx(0.5)


@pytest.mark.parametrize("tools", [["Read", "Bash"], ["Task"], ["invoke-component"], ["*"]])
def test_skill_with_forbidden_capability_is_rejected(tools: list) -> None:
    with pytest.raises(ConfigValidationError) as ei:
        build_descriptor(_skill(tools=tools))
    assert ei.value.code == "SKILL_FORBIDDEN_CAPABILITY"
    assert ei.value.details["descriptor"] == "skill:lint"


def test_agent_may_invoke_components() -> None:
    desc, _ = build_descriptor({"tier": "agent", "name": "reviewer", "description": "x", "tools": ["Read", "Task"]})
    assert isinstance(desc, AgentDescriptor)
    assert desc.tools == frozenset({READ, INVOKE_COMPONENT})

    default_desc, _ = build_descriptor({"tier": "agent", "name": "planner", "description": "x"})
    assert default_desc.tools == frozenset({ALL})


def test_unknown_tier_and_missing_tier_are_rejected() -> None:
    with pytest.raises(ConfigValidationError) as ei:
        build_descriptor({"tier": "plugin", "name": "x", "description": "y"})
    assert ei.value.code == "UNKNOWN_TIER"

    with pytest.raises(ConfigValidationError) as ei2:
        build_descriptor({"name": "x", "description": "y"})
    assert ei2.value.code == "UNKNOWN_TIER"

    desc, _ = build_descriptor({"name": "x", "description": "y"}, tier_hint=Tier.AGENT)
    assert desc.tier == "agent"


def test_missing_required_fields_are_reported_per_field() -> None:
    with pytest.raises(ConfigValidationError) as ei:
        build_descriptor({"tier": "skill", "name": "bad name!", "description": ""})
    fields = {f["field"] for f in ei.value.details["fields"]}
    assert {"name", "description"} <= fields


def test_unknown_fields_move_into_metadata_with_warning() -> None:
    desc, warnings = build_descriptor(_skill(color="blue", owner="team-a"), source="skills/lint/SKILL.md")
    assert desc.metadata == {"color": "blue", "owner": "team-a"}
    assert [w.code for w in warnings] == ["DESCRIPTOR_UNKNOWN_FIELDS"]
    assert warnings[0].details["fields"] == ["color", "owner"]
    assert desc.source == "skills/lint/SKILL.md"


def test_model_inherit_is_treated_as_unset_and_default_model_applies() -> None:
    desc, _ = build_descriptor(_skill(model="inherit"))
    assert desc.model == ""
    updated = apply_overrides(desc, default_model="model-x")
    assert updated.model == "model-x"

    pinned, _ = build_descriptor(_skill(model="pinned"))
    assert apply_overrides(pinned, default_model="model-x").model == "pinned"


def test_disabled_skills_override_only_touches_skills() -> None:
    skill, _ = build_descriptor(_skill())
    agent, _ = build_descriptor({"tier": "agent", "name": "lint", "description": "x"})
    assert apply_overrides(skill, disabled_skills={"lint"}).enabled is False
    assert apply_overrides(agent, disabled_skills={"lint"}).enabled is True


def test_command_parameters_and_default_workflow() -> None:
    desc, _ = build_descriptor(
        _command(
            parameters={
                "strict": {"type": "boolean", "default": False},
                "files": {"type": "array", "required": True},
            }
        )
    )
    assert isinstance(desc, CommandDescriptor)
    steps = desc.effective_workflow()
    assert [s.id for s in steps] == ["a", "b"]
    assert steps[1].depends_on == ["a"]
    assert all(s.policy is StepPolicy.BEST_EFFORT for s in steps)
    assert desc.parameters["files"].required is True


def test_parameter_default_must_match_type() -> None:
    with pytest.raises(ConfigValidationError):
        build_descriptor(_command(parameters={"depth": {"type": "number", "default": "deep"}}))


def test_workflow_step_needs_exactly_one_target() -> None:
    with pytest.raises(ConfigValidationError):
        build_descriptor(_command(workflow=[{"id": "s1", "agent": "a", "task": "t"}]))


@pytest.mark.parametrize(
    "workflow",
    [
        [{"id": "s1", "agent": "a"}, {"id": "s1", "agent": "b"}],
        [{"id": "s1", "agent": "a", "depends_on": ["ghost"]}],
        [{"id": "s1", "agent": "a", "depends_on": ["s2"]}, {"id": "s2", "agent": "b", "depends_on": ["s1"]}],
        [{"id": "s1", "agent": "outsider"}],
    ],
)
def test_invalid_workflows_are_reported(workflow: list) -> None:
    desc, _ = build_descriptor(_command(workflow=workflow))
    issues = validate_workflow(desc)
    assert issues
    assert all(i.code == "WORKFLOW_INVALID" for i in issues)


def test_validate_batch_rejects_duplicates_first_wins() -> None:
    first, _ = build_descriptor(_skill(), source="one")
    second, _ = build_descriptor(_skill(description="other"), source="two")
    same_name_other_tier, _ = build_descriptor({"tier": "agent", "name": "lint", "description": "x"})

    accepted, errors = validate_batch([first, second, same_name_other_tier])

    assert [d.source for d in accepted if d.tier == "skill"] == ["one"]
    assert len(accepted) == 2
    assert [e.code for e in errors] == ["DUPLICATE_NAME"]
    assert errors[0].details["first_source"] == "one"


def test_validate_batch_rejects_command_with_bad_workflow_only() -> None:
    bad, _ = build_descriptor(_command(workflow=[{"id": "s1", "agent": "a", "depends_on": ["s1"]}]))
    good, _ = build_descriptor(_skill())
    accepted, errors = validate_batch([bad, good])
    assert accepted == [good]
    assert errors and errors[0].code == "WORKFLOW_INVALID"


def test_parse_duration_sec() -> None:
    assert parse_duration_sec(None) is None
    assert parse_duration_sec(3) == 3.0
    assert parse_duration_sec("2m") == 120.0
    assert parse_duration_sec("10 minutes") == 600.0
    with pytest.raises(ValueError):
        parse_duration_sec("-1")
    with pytest.raises(ValueError):
        parse_duration_sec("soon")
