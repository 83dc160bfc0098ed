"""
组件 descriptor 数据模型（按 tier 分型的 tagged-variant 记录）。

说明：
- 每个 tier 一个 pydantic 模型，`tier` 字段作为判别键；未知 tier 显式拒绝。
- 模型 frozen：加载后的 descriptor 只读，快照替换而非原地修改。
- 未识别的自由字段由 loader 收拢进 `metadata`，模型本身拒绝未知字段（extra=forbid）。
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from tier_runtime.core.contracts import ComponentRef, Priority, StepPolicy, Tier
from tier_runtime.safety.capabilities import ALL, DEFAULT_SKILL_TOOLS, FORBIDDEN_FOR_SKILLS, normalize_capabilities

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|sec|secs|seconds|m|min|mins|minutes|h|hr|hours)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hours": 3600.0,
}


def parse_duration_sec(raw: Any) -> Optional[float]:
    """
    解析时长为秒。

    支持：
    - 数字（秒）
    - 字符串：`"30"`、`"500ms"`、`"10s"`、`"5m"`、`"10 minutes"`、`"1h"`

    异常：
    - ValueError：无法解析或为负数
    """

    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError("timeout must be a number or a duration string")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        m = _DURATION_RE.match(str(raw))
        if not m:
            raise ValueError(f"invalid duration: {raw!r}")
        unit = (m.group(2) or "s").lower()
        value = float(m.group(1)) * _DURATION_UNITS[unit]
    if value < 0:
        raise ValueError("timeout must be >= 0")
    return value


def as_str_list(value: Any) -> List[str]:
    """把 list 或逗号分隔字符串规范化为字符串列表（保序去空）。"""

    if value is None:
        return []
    if isinstance(value, str):
        items = [x.strip() for x in value.split(",")]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(x).strip() for x in value]
    else:
        raise ValueError("expected a list of strings")
    return [x for x in items if x]


class ParameterSpec(BaseModel):
    """Command 参数 schema（string/array/boolean/number）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["string", "array", "boolean", "number"] = "string"
    description: str = ""
    required: bool = False
    default: Any = None

    @model_validator(mode="after")
    def _check_default(self) -> "ParameterSpec":
        """default（如提供）必须与声明类型一致。"""

        d = self.default
        if d is None:
            return self
        ok = {
            "string": isinstance(d, str),
            "array": isinstance(d, (list, tuple)),
            "boolean": isinstance(d, bool),
            "number": isinstance(d, (int, float)) and not isinstance(d, bool),
        }[self.type]
        if not ok:
            raise ValueError(f"default does not match parameter type {self.type}")
        return self


class WorkflowStep(BaseModel):
    """Command workflow 的一个 step：调用一个 Agent，或运行调用方注册的 side task。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    agent: Optional[str] = None
    task: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    policy: StepPolicy = StepPolicy.BEST_EFFORT
    prompt: Optional[str] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _norm_deps(cls, value: Any) -> List[str]:
        return as_str_list(value)

    @field_validator("policy", mode="before")
    @classmethod
    def _norm_policy(cls, value: Any) -> Any:
        if isinstance(value, StepPolicy) or value is None:
            return value or StepPolicy.BEST_EFFORT
        return str(value).strip().lower().replace("_", "-")

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "WorkflowStep":
        if bool(self.agent) == bool(self.task):
            raise ValueError(f"workflow step {self.id!r} must declare exactly one of agent/task")
        return self

    @property
    def target(self) -> str:
        return f"agent:{self.agent}" if self.agent else f"task:{self.task}"


class _DescriptorBase(BaseModel):
    """三类 descriptor 的公共字段。"""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str
    description: str
    enabled: bool = True
    model: str = ""
    tools: FrozenSet[str] = Field(default_factory=lambda: frozenset({ALL}))
    timeout: Optional[float] = None
    instructions: str = ""
    source: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        text = str(value or "").strip()
        if not _NAME_RE.match(text):
            raise ValueError(f"invalid component name: {value!r}")
        return text

    @field_validator("description")
    @classmethod
    def _check_description(cls, value: str) -> str:
        text = " ".join(str(value or "").split())
        if not text:
            raise ValueError("description must be non-empty")
        return text

    @field_validator("tools", mode="before")
    @classmethod
    def _norm_tools(cls, value: Any) -> FrozenSet[str]:
        if isinstance(value, frozenset):
            return normalize_capabilities(value)
        return normalize_capabilities(as_str_list(value))

    @field_validator("timeout", mode="before")
    @classmethod
    def _norm_timeout(cls, value: Any) -> Optional[float]:
        return parse_duration_sec(value)

    @property
    def tier_enum(self) -> Tier:
        return Tier.parse(getattr(self, "tier"))

    @property
    def ref(self) -> ComponentRef:
        return ComponentRef(tier=self.tier_enum, name=self.name)


class SkillDescriptor(_DescriptorBase):
    """Skill：被触发的受限任务；永远不得调用其它组件。"""

    tier: Literal["skill"] = "skill"
    tools: FrozenSet[str] = Field(default_factory=lambda: DEFAULT_SKILL_TOOLS)
    priority: Priority = Priority.MEDIUM
    category: Optional[str] = None
    trigger_keywords: List[str] = Field(default_factory=list)
    file_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)
    max_iterations: Optional[int] = Field(default=None, ge=1)

    @field_validator("trigger_keywords", "file_patterns", "exclude_patterns", mode="before")
    @classmethod
    def _norm_lists(cls, value: Any) -> List[str]:
        return as_str_list(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _norm_priority(cls, value: Any) -> Any:
        if value is None:
            return Priority.MEDIUM
        if isinstance(value, Priority):
            return value
        return str(value).strip().lower()

    @model_validator(mode="after")
    def _no_forbidden_capabilities(self) -> "SkillDescriptor":
        bad = sorted(self.tools & FORBIDDEN_FOR_SKILLS)
        if bad:
            raise ValueError(f"skill tools must not include forbidden capabilities: {bad}")
        return self


class AgentDescriptor(_DescriptorBase):
    """Agent：按需调用的专家任务；可以调用 Skill。"""

    tier: Literal["agent"] = "agent"
    capabilities: List[str] = Field(default_factory=list)
    max_iterations: Optional[int] = Field(default=None, ge=1)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _norm_caps(cls, value: Any) -> List[str]:
        return as_str_list(value)


class CommandDescriptor(_DescriptorBase):
    """Command：编排一个或多个 Agent 的工作流。"""

    tier: Literal["command"] = "command"
    category: Optional[str] = None
    usage: str = ""
    parameters: Dict[str, ParameterSpec] = Field(default_factory=dict)
    agents: List[str] = Field(default_factory=list)
    workflow: List[WorkflowStep] = Field(default_factory=list)

    @field_validator("agents", mode="before")
    @classmethod
    def _norm_agents(cls, value: Any) -> List[str]:
        return as_str_list(value)

    @property
    def invokable_agents(self) -> List[str]:
        return list(self.agents)

    def effective_workflow(self) -> List[WorkflowStep]:
        """
        返回实际执行的 workflow。

        未声明 workflow 时：`agents[]` 中每个 agent 生成一个 step，按顺序串行依赖，失败策略为 best-effort。
        """

        if self.workflow:
            return list(self.workflow)
        steps: List[WorkflowStep] = []
        prev: Optional[str] = None
        for agent in self.agents:
            step_id = agent
            steps.append(WorkflowStep(id=step_id, agent=agent, depends_on=[prev] if prev else []))
            prev = step_id
        return steps


ComponentDescriptor = Annotated[
    Union[SkillDescriptor, AgentDescriptor, CommandDescriptor],
    Field(discriminator="tier"),
]

_DESCRIPTOR_ADAPTER: TypeAdapter[Any] = TypeAdapter(ComponentDescriptor)

DESCRIPTOR_FIELDS: Dict[Tier, FrozenSet[str]] = {
    Tier.SKILL: frozenset(SkillDescriptor.model_fields.keys()),
    Tier.AGENT: frozenset(AgentDescriptor.model_fields.keys()),
    Tier.COMMAND: frozenset(CommandDescriptor.model_fields.keys()),
}


def parse_descriptor(data: Dict[str, Any]) -> Union[SkillDescriptor, AgentDescriptor, CommandDescriptor]:
    """按 `tier` 判别解析 descriptor（pydantic 校验失败抛 ValidationError）。"""

    return _DESCRIPTOR_ADAPTER.validate_python(data)


__all__ = [
    "AgentDescriptor",
    "CommandDescriptor",
    "ComponentDescriptor",
    "DESCRIPTOR_FIELDS",
    "ParameterSpec",
    "SkillDescriptor",
    "WorkflowStep",
    "as_str_list",
    "parse_descriptor",
    "parse_duration_sec",
]
