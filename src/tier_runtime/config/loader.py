"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 环境变量开关不在此处读取：由 `tier_runtime.bootstrap` 在 registry 加载时统一应用。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from tier_runtime.core.contracts import Tier


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class SchedulerConfig(BaseModel):
    """调度参数。"""

    model_config = ConfigDict(extra="forbid")

    # Skill 并发池大小；同时也是 Command workflow fan-out 的上限
    max_concurrency: int = Field(default=4, ge=1)


class TimeoutsConfig(BaseModel):
    """
    各 tier 的默认超时（秒）。

    说明：
    - Agent 未显式配置 timeout 时：若声明了 max_iterations，则取 `max_iterations * agent_iteration_sec`
      与 `agent_sec` 的较小值；否则取 `agent_sec`。
    """

    model_config = ConfigDict(extra="forbid")

    skill_sec: float = Field(default=10.0, ge=0.0)
    agent_sec: float = Field(default=300.0, ge=0.0)
    agent_iteration_sec: float = Field(default=30.0, ge=0.0)
    command_sec: float = Field(default=600.0, ge=0.0)


class InvocationConfig(BaseModel):
    """调用图参数。"""

    model_config = ConfigDict(extra="forbid")

    # 默认 2：Command→Agent→Skill
    max_depth: int = Field(default=2, ge=0)
    skill_max_iterations: int = Field(default=5, ge=1)
    agent_max_iterations: int = Field(default=20, ge=1)


class RegistryConfig(BaseModel):
    """descriptor 来源。"""

    model_config = ConfigDict(extra="forbid")

    roots: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """日志参数。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"


class RuntimeConfig(BaseModel):
    """运行时配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    invocation: InvocationConfig = Field(default_factory=InvocationConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def default_timeout_for(self, tier: Tier, *, max_iterations: Optional[int] = None) -> float:
        """返回某 tier 在 descriptor 未声明 timeout 时的默认超时（秒）。"""

        if tier is Tier.SKILL:
            return float(self.timeouts.skill_sec)
        if tier is Tier.COMMAND:
            return float(self.timeouts.command_sec)
        if max_iterations:
            return min(float(self.timeouts.agent_sec), float(max_iterations) * float(self.timeouts.agent_iteration_sec))
        return float(self.timeouts.agent_sec)

    def max_iterations_for(self, tier: Tier) -> int:
        if tier is Tier.SKILL:
            return int(self.invocation.skill_max_iterations)
        return int(self.invocation.agent_max_iterations)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> RuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `RuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return RuntimeConfig.model_validate(merged)


def load_config(config_paths: list[Path], *, include_defaults: bool = True) -> RuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `RuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否以内置默认配置作为最底层
    """

    overlays: list[Dict[str, Any]] = []
    if include_defaults:
        from tier_runtime.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
