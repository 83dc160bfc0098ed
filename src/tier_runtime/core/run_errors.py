"""
调用失败的类型化（异常 → InvocationStatus + reason）。

说明：
- 管线内部抛出的 `InvocationError` 子类带有稳定的 status
- 其它异常一律归为 `error`；结构化框架错误保留 code/details
- 分类只在调用边界进行一次：调度器与上层调用方只看到 `InvocationResult`
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from tier_runtime.core.contracts import InvocationStatus
from tier_runtime.core.errors import FrameworkError, InvocationError

_MAX_REASON_CHARS = 800


@dataclass(frozen=True)
class InvocationFailure:
    """
    结构化调用失败。

    字段：
    - status：稳定状态
    - reason：可读原因（已截断）
    - code：稳定错误码
    - details：结构化上下文（可 JSON 序列化）
    """

    status: InvocationStatus
    reason: str
    code: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"status": self.status.value, "reason": self.reason}
        if self.code:
            out["code"] = self.code
        if self.details:
            out["details"] = dict(self.details)
        return out


def _truncate(msg: str) -> str:
    if len(msg) > _MAX_REASON_CHARS:
        return msg[:_MAX_REASON_CHARS] + "...<truncated>"
    return msg


def classify_invocation_exception(exc: BaseException) -> InvocationFailure:
    """
    将调用期异常映射为结构化 InvocationFailure。

    映射：
    - InvocationError 子类 → 其绑定的 status（permissionViolation/cycleDetected/timeout/disabled/notFound）
    - FrameworkError → error（保留 code/details）
    - TimeoutError → timeout
    - 其它 → error
    """

    if isinstance(exc, InvocationError):
        return InvocationFailure(
            status=exc.status,
            reason=_truncate(exc.message or exc.status.value),
            code=exc.code,
            details=dict(exc.details),
        )

    if isinstance(exc, FrameworkError):
        return InvocationFailure(
            status=InvocationStatus.ERROR,
            reason=_truncate(str(exc)),
            code=exc.code,
            details=dict(exc.details),
        )

    if isinstance(exc, TimeoutError):
        return InvocationFailure(status=InvocationStatus.TIMEOUT, reason=_truncate(str(exc) or "timed out"), code="TIMEOUT")

    name = type(exc).__name__
    text = str(exc)
    return InvocationFailure(
        status=InvocationStatus.ERROR,
        reason=_truncate(f"{name}: {text}" if text else name),
        code="UNHANDLED_EXCEPTION",
        details={"exception": name},
    )


__all__ = ["InvocationFailure", "classify_invocation_exception"]
