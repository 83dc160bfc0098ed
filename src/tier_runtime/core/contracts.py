"""
核心契约：tier / priority / severity / status 枚举与调用结果结构。

说明：
- 所有结果对象均为 frozen dataclass：一旦产出不再修改，跨线程传递无需加锁。
- `InvocationStatus` 的取值为稳定的机器可消费字符串（camelCase，与宿主侧约定一致）。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple


class Tier(str, Enum):
    """组件层级。"""

    SKILL = "skill"
    AGENT = "agent"
    COMMAND = "command"

    @classmethod
    def parse(cls, raw: Any) -> "Tier":
        """大小写不敏感解析；未知值抛 ValueError（显式拒绝，不做 duck-typing）。"""

        text = str(raw or "").strip().lower()
        for t in cls:
            if t.value == text:
                return t
        raise ValueError(f"unknown tier: {raw!r}")


class Priority(str, Enum):
    """Skill 优先级（high → medium → low）。"""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """排序键：数值越小越先调度。"""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class Severity(str, Enum):
    """Finding 严重度（critical > error > warning > info）。"""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]

    @classmethod
    def parse(cls, raw: Any) -> "Severity":
        """解析 severity；兼容 high/medium/low 写法，未知值降级为 info。"""

        text = str(raw or "").strip().lower()
        text = _SEVERITY_ALIASES.get(text, text)
        for s in cls:
            if s.value == text:
                return s
        return cls.INFO


_SEVERITY_WEIGHT = {Severity.CRITICAL: 4, Severity.ERROR: 3, Severity.WARNING: 2, Severity.INFO: 1}
_SEVERITY_ALIASES = {"high": "error", "medium": "warning", "low": "info", "warn": "warning", "fatal": "critical"}


class InvocationStatus(str, Enum):
    """调用结果状态（稳定取值）。"""

    SUCCESS = "success"
    # 仅 Command 使用：best-effort step 失败但整体继续
    SUCCESS_WITH_WARNINGS = "success-with-warnings"
    TIMEOUT = "timeout"
    PERMISSION_VIOLATION = "permissionViolation"
    CYCLE_DETECTED = "cycleDetected"
    DISABLED = "disabled"
    NOT_FOUND = "notFound"
    ERROR = "error"
    # 仅 workflow step 使用：required step 失败后未启动的 step
    SKIPPED = "skipped"

    @property
    def is_ok(self) -> bool:
        return self in (InvocationStatus.SUCCESS, InvocationStatus.SUCCESS_WITH_WARNINGS)


class StepPolicy(str, Enum):
    """workflow step 的失败策略。"""

    REQUIRED = "required"
    BEST_EFFORT = "best-effort"


class TriggerKind(str, Enum):
    """触发事件类型。"""

    FILE_SAVED = "fileSaved"
    COMMIT = "commit"
    CONVERSATION_TEXT = "conversationText"


@dataclass(frozen=True)
class ComponentRef:
    """组件引用（tier + name；name 仅在 tier 命名空间内唯一）。"""

    tier: Tier
    name: str

    def __str__(self) -> str:
        return f"{self.tier.value}:{self.name}"


@dataclass(frozen=True)
class TriggerEvent:
    """
    宿主产出的触发事件（只由 Trigger Matcher 消费）。

    payload 约定：
    - fileSaved：`{"path": "src/a.ts"}`
    - commit：`{"paths": [...], "message": "..."}`
    - conversationText：`{"text": "..."}`
    """

    kind: TriggerKind
    payload: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def file_saved(cls, path: str) -> "TriggerEvent":
        return cls(kind=TriggerKind.FILE_SAVED, payload={"path": str(path)})

    @classmethod
    def commit(cls, paths: Sequence[str], message: str = "") -> "TriggerEvent":
        return cls(kind=TriggerKind.COMMIT, payload={"paths": [str(p) for p in paths], "message": str(message)})

    @classmethod
    def conversation(cls, text: str) -> "TriggerEvent":
        return cls(kind=TriggerKind.CONVERSATION_TEXT, payload={"text": str(text)})


@dataclass(frozen=True)
class Finding:
    """
    结构化发现（Report Aggregator 合并与去重的单位）。

    字段：
    - source_component：产出该 finding 的组件名
    - severity：严重度
    - message：可读消息（去重键之一）
    - location：可选；文件位置（例如 `src/a.py:12`）
    - category：可选；分类标签（例如失败 step 的状态 `timeout`，或 `success`）
    - sequence：产出组件的调用序号（聚合排序用；由 runtime 填充）
    """

    source_component: str
    severity: Severity
    message: str
    location: Optional[str] = None
    category: Optional[str] = None
    sequence: int = 0

    def with_sequence(self, sequence: int) -> "Finding":
        return replace(self, sequence=int(sequence))

    def to_jsonable(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "source_component": self.source_component,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.location is not None:
            out["location"] = self.location
        if self.category is not None:
            out["category"] = self.category
        return out


@dataclass(frozen=True)
class StepOutcome:
    """workflow 中单个 step 的结局（用于最终报告的“哪些 step 失败、为何失败”注解）。"""

    step_id: str
    status: InvocationStatus
    policy: StepPolicy
    reason: Optional[str] = None
    target: Optional[str] = None

    @property
    def failed(self) -> bool:
        return not self.status.is_ok

    def to_jsonable(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"step": self.step_id, "status": self.status.value, "policy": self.policy.value}
        if self.target is not None:
            out["target"] = self.target
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass(frozen=True)
class InvocationResult:
    """
    一次调用的结果（顶层调用方总能拿到它，可能是部分结果）。

    字段：
    - status：结果状态
    - findings：本节点（含子树聚合后）的 findings
    - elapsed_ms：耗时（毫秒）
    - component：被调用组件（调度前即失败且无法解析时可为 None）
    - call_id：本次调用 id
    - reason：非成功时的可读原因
    - output：组件最终回答文本（可选）
    - children：嵌套调用结果（按完成顺序，聚合时不依赖该顺序）
    - steps：Command workflow 的 step 结局（仅 Command）
    - sequence：调用序号（聚合排序用）
    """

    status: InvocationStatus
    findings: Tuple[Finding, ...] = ()
    elapsed_ms: int = 0
    component: Optional[ComponentRef] = None
    call_id: str = ""
    reason: Optional[str] = None
    output: Optional[str] = None
    children: Tuple["InvocationResult", ...] = ()
    steps: Tuple[StepOutcome, ...] = ()
    sequence: int = 0

    @property
    def ok(self) -> bool:
        return self.status.is_ok

    @property
    def failed_steps(self) -> Tuple[StepOutcome, ...]:
        return tuple(s for s in self.steps if s.failed)

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为可 JSON 序列化的 dict（字段稳定）。"""

        out: Dict[str, Any] = {
            "status": self.status.value,
            "call_id": self.call_id,
            "component": str(self.component) if self.component is not None else None,
            "elapsed_ms": int(self.elapsed_ms),
            "findings": [f.to_jsonable() for f in self.findings],
        }
        if self.reason:
            out["reason"] = self.reason
        if self.output is not None:
            out["output"] = self.output
        if self.steps:
            out["steps"] = [s.to_jsonable() for s in self.steps]
        if self.children:
            out["children"] = [c.to_jsonable() for c in self.children]
        return out


__all__ = [
    "ComponentRef",
    "Finding",
    "InvocationResult",
    "InvocationStatus",
    "Priority",
    "Severity",
    "StepOutcome",
    "StepPolicy",
    "Tier",
    "TriggerEvent",
    "TriggerKind",
]
