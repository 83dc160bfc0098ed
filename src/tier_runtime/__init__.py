"""
Tier Runtime SDK（Python）。

说明：
- 三层组件运行时：Skill（被触发的受限任务）、Agent（按需调用的专家）、Command（编排 Agent 的工作流）。
- 当前包含：
  - descriptor 注册表（目录扫描 / YAML / JSON，不可变快照 + 原子替换）
  - Trigger Matcher（fileSaved / commit / conversationText）
  - Capability Sandbox 与 Invocation Graph Controller（合法调用边、环、深度）
  - 调用上下文、deadline 与协作式取消
  - Skill 线程池与 Command workflow 依赖图调度
  - Report Aggregator（排序 + 去重）
  - 配置加载器（YAML overlay + pydantic 校验）与 CLI
"""

from __future__ import annotations

from tier_runtime.core.contracts import (
    ComponentRef,
    Finding,
    InvocationResult,
    InvocationStatus,
    Severity,
    Tier,
    TriggerEvent,
    TriggerKind,
)
from tier_runtime.core.runtime import EventDispatch, TaskContext, TierRuntime
from tier_runtime.registry.snapshot import LoadReport, Registry, RegistrySnapshot

__all__ = [
    "ComponentRef",
    "EventDispatch",
    "Finding",
    "InvocationResult",
    "InvocationStatus",
    "LoadReport",
    "Registry",
    "RegistrySnapshot",
    "Severity",
    "TaskContext",
    "Tier",
    "TierRuntime",
    "TriggerEvent",
    "TriggerKind",
    "__version__",
]

__version__ = "0.3.0"
