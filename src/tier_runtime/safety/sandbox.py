"""Capability Sandbox：每次 tool use 之前按 `InvocationContext.allowed_tools` 放行或拒绝。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from tier_runtime.core.context import InvocationContext
from tier_runtime.core.errors import PermissionViolation
from tier_runtime.safety.capabilities import allows, normalize_capability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandboxDecision:
    """沙箱决策输出（action: allow|deny）。"""

    action: str
    capability: str
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.action == "allow"


class CapabilitySandbox:
    """
    能力沙箱。

    说明：
    - allowed_tools 已是“自身 allow-list ∩ 所有祖先 allow-list”，沙箱只做成员判定
    - 拒绝只中止这一次 tool call；由调用方把结果状态置为 permissionViolation
    """

    def check(self, ctx: InvocationContext, capability: str) -> SandboxDecision:
        cap = normalize_capability(capability)
        if allows(ctx.allowed_tools, cap):
            return SandboxDecision(action="allow", capability=cap)
        reason = f"{ctx.component} is not allowed to use capability {cap!r}"
        logger.info("sandbox denied: %s (call_id=%s)", reason, ctx.call_id)
        return SandboxDecision(action="deny", capability=cap, reason=reason)

    def enforce(self, ctx: InvocationContext, capability: str, *, tool: Optional[str] = None) -> str:
        """放行时返回规范能力名；拒绝时抛 `PermissionViolation`。"""

        decision = self.check(ctx, capability)
        if not decision.allowed:
            raise PermissionViolation(
                decision.reason,
                code="CAPABILITY_DENIED",
                details={
                    "capability": decision.capability,
                    "tool": tool,
                    "allowed": sorted(ctx.allowed_tools),
                    "caller_chain": list(ctx.chain_names()),
                },
            )
        return decision.capability


__all__ = ["CapabilitySandbox", "SandboxDecision"]
