"""
InvocationContext：一次顶层调用内贯穿所有嵌套调用的上下文。

要点：
- 上下文对象不可变；嵌套调用通过 `derive()` 得到新对象（新 call_id、更深的 caller_chain、更小的 depth 预算）。
- 取消令牌按引用传递：子令牌挂在父令牌之下。父令牌取消会级联到整棵子树，
  子令牌取消不会影响祖先。
- checkpoint（开始新的 tool call 或嵌套调用之前）轮询令牌与 deadline；取消是协作式的。
"""

from __future__ import annotations

import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, FrozenSet, Optional, Tuple

from tier_runtime.core.contracts import ComponentRef
from tier_runtime.core.errors import InvocationTimeout
from tier_runtime.safety.capabilities import intersect

if TYPE_CHECKING:  # pragma: no cover
    from tier_runtime.registry.snapshot import RegistrySnapshot


class CancellationToken:
    """
    协作式取消令牌。

    说明：
    - `cancel()` 只置位自身；`is_cancelled()` 同时观察所有祖先令牌。
    - `reason` 返回最先可见的取消原因（自身优先，其次祖先）。
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        """置位取消信号（幂等；保留第一次的原因）。"""

        with self._lock:
            if self._reason is None:
                self._reason = str(reason or "cancelled")
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled()

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def child(self) -> "CancellationToken":
        """创建挂在本令牌下的子令牌。"""

        return CancellationToken(parent=self)


class InvocationCounter:
    """顶层调用内共享的调用序号发生器（线程安全，从 1 开始）。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._it = itertools.count(1)

    def next(self) -> int:
        with self._lock:
            return next(self._it)


def _new_call_id() -> str:
    return uuid.uuid4().hex


def _deadline_from(timeout_sec: Optional[float], *, now: float) -> Optional[float]:
    if timeout_sec is None:
        return None
    return now + max(0.0, float(timeout_sec))


@dataclass(frozen=True)
class InvocationContext:
    """
    调用上下文（不可变）。

    字段：
    - call_id：本次调用 id
    - component：当前组件
    - caller_chain：从顶层到当前组件（含自身）的有序引用列表
    - depth_remaining：剩余可嵌套层数
    - deadline：monotonic 截止时间（None 表示不限制）
    - token：取消令牌（子树共享祖先令牌）
    - allowed_tools：允许能力集合（自身 allow-list 与所有祖先的交集）
    - snapshot：本次顶层调用绑定的 registry 快照（整个生命周期不变）
    - sequence：调用序号（聚合排序用）
    - root_call_id：顶层调用 id
    """

    call_id: str
    component: ComponentRef
    caller_chain: Tuple[ComponentRef, ...]
    depth_remaining: int
    deadline: Optional[float]
    token: CancellationToken
    allowed_tools: FrozenSet[str]
    snapshot: Optional["RegistrySnapshot"] = None
    sequence: int = 1
    root_call_id: str = ""
    started_monotonic: float = field(default_factory=time.monotonic)
    counter: InvocationCounter = field(default_factory=InvocationCounter, repr=False, compare=False)

    @classmethod
    def root(
        cls,
        *,
        component: ComponentRef,
        allowed_tools: FrozenSet[str],
        timeout_sec: Optional[float],
        max_depth: int,
        snapshot: Optional["RegistrySnapshot"] = None,
        token: Optional[CancellationToken] = None,
    ) -> "InvocationContext":
        """创建顶层调用上下文。"""

        now = time.monotonic()
        counter = InvocationCounter()
        call_id = _new_call_id()
        return cls(
            call_id=call_id,
            component=component,
            caller_chain=(component,),
            depth_remaining=int(max_depth),
            deadline=_deadline_from(timeout_sec, now=now),
            token=token or CancellationToken(),
            allowed_tools=frozenset(allowed_tools),
            snapshot=snapshot,
            sequence=counter.next(),
            root_call_id=call_id,
            started_monotonic=now,
            counter=counter,
        )

    def derive(
        self,
        *,
        component: ComponentRef,
        callee_tools: FrozenSet[str],
        timeout_sec: Optional[float],
    ) -> "InvocationContext":
        """
        为嵌套调用派生上下文。

        规则：
        - deadline 取 min(父 deadline, now + 子组件 timeout)
        - allowed_tools 取父集合与被调方 allow-list 的交集（被调方不会获得调用方没有的能力）
        - 令牌为父令牌的子令牌
        """

        now = time.monotonic()
        own = _deadline_from(timeout_sec, now=now)
        if self.deadline is None:
            deadline = own
        elif own is None:
            deadline = self.deadline
        else:
            deadline = min(self.deadline, own)
        return InvocationContext(
            call_id=_new_call_id(),
            component=component,
            caller_chain=self.caller_chain + (component,),
            depth_remaining=self.depth_remaining - 1,
            deadline=deadline,
            token=self.token.child(),
            allowed_tools=intersect(self.allowed_tools, frozenset(callee_tools)),
            snapshot=self.snapshot,
            sequence=self.counter.next(),
            root_call_id=self.root_call_id,
            started_monotonic=now,
            counter=self.counter,
        )

    def remaining_sec(self) -> Optional[float]:
        """距离 deadline 的剩余秒数（不限制时为 None；已过期为 0）。"""

        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def is_cancelled(self) -> bool:
        return self.token.is_cancelled()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def checkpoint(self, *, what: str = "") -> None:
        """
        协作式检查点：deadline 到期或取消信号已置位时抛 `InvocationTimeout`。

        参数：
        - what：可选；检查点描述（写入异常 details，便于排障）
        """

        if self.expired() and not self.token.is_cancelled():
            self.token.cancel("deadline exceeded")
        if self.token.is_cancelled():
            reason = self.token.reason or "cancelled"
            raise InvocationTimeout(
                f"{self.component} stopped at checkpoint: {reason}",
                details={"checkpoint": what, "call_id": self.call_id},
            )

    def chain_names(self) -> Tuple[str, ...]:
        return tuple(str(c) for c in self.caller_chain)


__all__ = ["CancellationToken", "InvocationContext", "InvocationCounter"]
