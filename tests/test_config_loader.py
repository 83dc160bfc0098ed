from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from tier_runtime.config.defaults import load_default_config_dict
from tier_runtime.config.loader import RuntimeConfig, load_config, load_config_dicts
from tier_runtime.core.contracts import Tier


def test_default_yaml_matches_model_defaults() -> None:
    cfg = load_config_dicts([load_default_config_dict()])
    assert cfg == RuntimeConfig()
    assert cfg.scheduler.max_concurrency == 4
    assert cfg.invocation.max_depth == 2
    assert cfg.logging.level == "WARNING"


def test_load_config_default_plus_overlay(tmp_path: Path) -> None:
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text(
        "\n".join(
            [
                "scheduler:",
                "  max_concurrency: 2",
                "timeouts:",
                "  skill_sec: 3",
                "registry:",
                "  roots: [components]",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    cfg = load_config([overlay])

    assert cfg.scheduler.max_concurrency == 2
    assert cfg.timeouts.skill_sec == 3.0
    # 未覆盖的字段保持默认
    assert cfg.timeouts.command_sec == 600.0
    assert cfg.registry.roots == ["components"]


def test_later_overlay_wins_and_lists_are_replaced() -> None:
    cfg = load_config_dicts(
        [
            {"registry": {"roots": ["a", "b"]}, "timeouts": {"agent_sec": 100}},
            {"registry": {"roots": ["c"]}},
        ]
    )
    assert cfg.registry.roots == ["c"]
    assert cfg.timeouts.agent_sec == 100.0


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"scheduler": {"max_concurency": 3}}])


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"scheduler": {"max_concurrency": 0}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"logging": {"level": "TRACE"}}])


def test_missing_overlay_fails_fast(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "missing.yaml"])


def test_default_timeout_per_tier() -> None:
    cfg = load_config_dicts([{"timeouts": {"skill_sec": 5, "agent_sec": 120, "agent_iteration_sec": 10, "command_sec": 900}}])
    assert cfg.default_timeout_for(Tier.SKILL) == 5.0
    assert cfg.default_timeout_for(Tier.COMMAND) == 900.0
    assert cfg.default_timeout_for(Tier.AGENT) == 120.0
    assert cfg.default_timeout_for(Tier.AGENT, max_iterations=3) == 30.0
    assert cfg.default_timeout_for(Tier.AGENT, max_iterations=50) == 120.0
    assert cfg.max_iterations_for(Tier.SKILL) == 5
    assert cfg.max_iterations_for(Tier.AGENT) == 20
