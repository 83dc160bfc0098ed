"""
运行时错误分类（异常类型）。

说明：
- 加载期错误（descriptor 校验失败）以 `ConfigValidationError` 表示，按 descriptor 逐条汇报，不阻塞其它 descriptor。
- 调用期错误（权限/环路/超时/禁用/不存在）只在 invocation 管线内部抛出，
  并在调用边界被转换为 `InvocationResult.status`；不得逃逸到调度器。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from tier_runtime.core.contracts import InvocationStatus


class TierRuntimeError(Exception):
    """运行时内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """框架结构化问题对象（可用于 load 报告中的 errors/warnings）。"""

    code: str
    message: str
    details: Dict[str, Any]

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为可 JSON 序列化的 dict。"""

        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class FrameworkError(TierRuntimeError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入导致的错误（例如 invocation line 的未知 flag / 缺失必填参数）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        super().__init__(code=code, message=message, details=details or {})


class ConfigValidationError(FrameworkError):
    """单个 descriptor 校验失败（load 阶段逐条汇报）。"""

    def __init__(
        self,
        message: str,
        *,
        code: str = "DESCRIPTOR_INVALID",
        descriptor: Optional[str] = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        """
        参数：
        - `message`：英文错误消息
        - `code`：稳定错误码
        - `descriptor`：可选；出错 descriptor 的定位（`tier:name` 或来源路径）
        - `details`：结构化上下文
        """

        merged: Dict[str, Any] = dict(details or {})
        if descriptor is not None:
            merged.setdefault("descriptor", descriptor)
        super().__init__(code=code, message=message, details=merged)


class InvocationError(TierRuntimeError):
    """
    调用期错误基类。

    每个子类绑定一个稳定的 `InvocationStatus`，由调用边界转换为结果状态。
    """

    status: InvocationStatus = InvocationStatus.ERROR

    def __init__(self, message: str, *, code: str = "", details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.status.value
        self.details: Dict[str, Any] = details or {}


class PermissionViolation(InvocationError):
    """工具能力或 tier 边不被允许（只中止当前调用）。"""

    status = InvocationStatus.PERMISSION_VIOLATION


class CycleDetected(InvocationError):
    """目标组件已出现在 callerChain 中。"""

    status = InvocationStatus.CYCLE_DETECTED


class InvocationTimeout(InvocationError):
    """deadline 到期或取消信号已置位（协作式中止）。"""

    status = InvocationStatus.TIMEOUT


class ComponentDisabled(InvocationError):
    """目标组件被禁用（派发前判定，无副作用）。"""

    status = InvocationStatus.DISABLED


class ComponentNotFound(InvocationError):
    """目标组件不存在（派发前判定，无副作用）。"""

    status = InvocationStatus.NOT_FOUND
