from __future__ import annotations

import pytest

from tier_runtime.core.contracts import Tier
from tier_runtime.core.errors import UserError
from tier_runtime.core.invocation_line import bind_arguments, coerce_parameters, parse_invocation_line
from tier_runtime.registry.models import ParameterSpec

SPEC = {
    "strict": ParameterSpec(type="boolean"),
    "paths": ParameterSpec(type="array"),
    "max_issues": ParameterSpec(type="number", default=10),
    "focus": ParameterSpec(type="string"),
    "level": ParameterSpec(type="string", default="normal"),
}


def test_parse_command_and_agent_lines() -> None:
    cmd = parse_invocation_line("/review --strict 'src/a b.py'")
    assert cmd.tier is Tier.COMMAND
    assert cmd.name == "review"
    assert cmd.tokens == ("--strict", "src/a b.py")

    agent = parse_invocation_line("  @reviewer   look at   this  ")
    assert agent.tier is Tier.AGENT
    assert agent.name == "reviewer"
    assert agent.text == "look at   this"


def test_name_ends_at_any_whitespace() -> None:
    agent = parse_invocation_line("@reviewer\tcheck this")
    assert agent.name == "reviewer"
    assert agent.text == "check this"

    cmd = parse_invocation_line("/review\t--strict\nsrc")
    assert cmd.name == "review"
    assert cmd.tokens == ("--strict", "src")


@pytest.mark.parametrize("line", ["", "review", "/", "@ text", "@\ttext", "/review 'unterminated"])
def test_parse_rejects_bad_lines(line: str) -> None:
    with pytest.raises(UserError) as ei:
        parse_invocation_line(line)
    assert ei.value.code == "INVOCATION_LINE_INVALID"


def test_bind_arguments_types_and_defaults() -> None:
    bound = bind_arguments(
        SPEC,
        ["--strict", "--paths", "a.py,b.py", "--paths=c.py", "--max-issues", "3", "--focus=auth", "check", "this"],
    )
    assert bound.parameters == {
        "strict": True,
        "paths": ["a.py", "b.py", "c.py"],
        "max_issues": 3,
        "focus": "auth",
        "level": "normal",
    }
    assert bound.input == "check this"


def test_boolean_forms() -> None:
    assert bind_arguments(SPEC, ["--no-strict"]).parameters["strict"] is False
    assert bind_arguments(SPEC, ["--strict", "off"]).parameters["strict"] is False
    assert bind_arguments(SPEC, ["--strict=yes"]).parameters["strict"] is True
    # 非布尔字面量不会被吞掉
    bound = bind_arguments(SPEC, ["--strict", "hello"])
    assert bound.parameters["strict"] is True
    assert bound.input == "hello"


def test_double_dash_ends_flags() -> None:
    bound = bind_arguments(SPEC, ["--", "--strict", "x"])
    assert bound.input == "--strict x"
    assert "strict" not in bound.parameters


def test_float_numbers() -> None:
    assert bind_arguments(SPEC, ["--max_issues", "2.5"]).parameters["max_issues"] == 2.5


@pytest.mark.parametrize(
    "tokens,code",
    [
        (["--unknown", "1"], "PARAMETER_UNKNOWN"),
        (["--max-issues", "many"], "PARAMETER_INVALID"),
        (["--focus"], "PARAMETER_INVALID"),
        (["--strict=maybe"], "PARAMETER_INVALID"),
    ],
)
def test_bind_arguments_errors(tokens: list, code: str) -> None:
    with pytest.raises(UserError) as ei:
        bind_arguments(SPEC, tokens)
    assert ei.value.code == code


def test_required_parameters() -> None:
    spec = {"target": ParameterSpec(type="string", required=True)}
    with pytest.raises(UserError) as ei:
        bind_arguments(spec, [])
    assert ei.value.code == "PARAMETER_MISSING"
    assert ei.value.details["missing"] == ["target"]


def test_coerce_parameters_accepts_typed_values() -> None:
    out = coerce_parameters(SPEC, {"strict": True, "paths": ["a", "b,c"], "max-issues": 7})
    assert out == {"strict": True, "paths": ["a", "b", "c"], "max_issues": 7, "level": "normal"}
