"""
Invocation Graph Controller：派发前校验调用边。

合法边：Command→Agent、Agent→Skill。其余一律拒绝（Skill→任何、Agent→Command、自身调用）。
检查顺序：
1) 环路：目标名已在 caller_chain 中（不区分 tier）→ cycleDetected
2) tier 边：不在合法边表 → permissionViolation（TIER_EDGE_FORBIDDEN）
3) 深度：depth_remaining 必须 > 0 → permissionViolation（DEPTH_EXCEEDED）

校验在任何执行发生之前完成；违规时不会产生部分执行。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional

from tier_runtime.core.context import InvocationContext
from tier_runtime.core.contracts import ComponentRef, InvocationStatus, Tier
from tier_runtime.core.errors import CycleDetected, InvocationError, PermissionViolation

logger = logging.getLogger(__name__)

LEGAL_EDGES: Mapping[Tier, FrozenSet[Tier]] = {
    Tier.COMMAND: frozenset({Tier.AGENT}),
    Tier.AGENT: frozenset({Tier.SKILL}),
    Tier.SKILL: frozenset(),
}


@dataclass(frozen=True)
class GraphDecision:
    """调用边校验结果。"""

    allowed: bool
    status: InvocationStatus = InvocationStatus.SUCCESS
    code: str = ""
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_error(self) -> InvocationError:
        """把拒绝决策转换为对应异常（允许时不应调用）。"""

        if self.status is InvocationStatus.CYCLE_DETECTED:
            return CycleDetected(self.reason, code=self.code, details=dict(self.details))
        return PermissionViolation(self.reason, code=self.code, details=dict(self.details))


_ALLOW = GraphDecision(allowed=True)


class InvocationGraphController:
    """调用图控制器（无状态：所有判定数据都来自 InvocationContext）。"""

    def __init__(self, *, legal_edges: Optional[Mapping[Tier, FrozenSet[Tier]]] = None) -> None:
        self._edges = dict(legal_edges or LEGAL_EDGES)

    def check(self, caller: InvocationContext, target: ComponentRef) -> GraphDecision:
        """
        校验 caller → target 的嵌套调用。

        参数：
        - caller：调用方上下文（caller_chain 包含调用方自身）
        - target：被调组件
        """

        chain = list(caller.chain_names())
        if target.name in {c.name for c in caller.caller_chain}:
            reason = f"{target} already appears in caller chain {' -> '.join(chain)}"
            logger.info("cycle detected: %s", reason)
            return GraphDecision(
                allowed=False,
                status=InvocationStatus.CYCLE_DETECTED,
                code="CYCLE_DETECTED",
                reason=reason,
                details={"target": str(target), "caller_chain": chain},
            )

        source_tier = caller.component.tier
        if target.tier not in self._edges.get(source_tier, frozenset()):
            reason = f"{source_tier.value} may not invoke {target.tier.value} ({caller.component} -> {target})"
            logger.info("tier edge denied: %s", reason)
            return GraphDecision(
                allowed=False,
                status=InvocationStatus.PERMISSION_VIOLATION,
                code="TIER_EDGE_FORBIDDEN",
                reason=reason,
                details={"source": str(caller.component), "target": str(target), "caller_chain": chain},
            )

        if caller.depth_remaining <= 0:
            reason = f"invocation depth exhausted at {caller.component}"
            logger.info("depth exceeded: %s", reason)
            return GraphDecision(
                allowed=False,
                status=InvocationStatus.PERMISSION_VIOLATION,
                code="DEPTH_EXCEEDED",
                reason=reason,
                details={"target": str(target), "caller_chain": chain},
            )
        return _ALLOW

    def enforce(self, caller: InvocationContext, target: ComponentRef) -> None:
        decision = self.check(caller, target)
        if not decision.allowed:
            raise decision.to_error()


__all__ = ["GraphDecision", "InvocationGraphController", "LEGAL_EDGES"]
