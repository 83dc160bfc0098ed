"""
离线脚本化模型（测试与示例使用，不访问网络）。

用法：
- `ScriptedModel({"agent:reviewer": [ToolUseRequest.invoke("skill", "lint"), FinalAnswer("done")]})`
- 脚本按 `request.iteration` 取第 N 项；超出范围时返回空 FinalAnswer
- 脚本项也可以是 `callable(request) -> reply`，或 `Delay(seconds, reply)` 模拟延迟
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from tier_runtime.llm.protocol import FinalAnswer, ModelReply, ModelRequest


@dataclass(frozen=True)
class Delay:
    """先阻塞 seconds 秒再返回 reply（模拟慢模型；不观察取消信号）。"""

    seconds: float
    reply: "ScriptItem"


ScriptItem = Union[ModelReply, Delay, Callable[[ModelRequest], ModelReply]]


class ScriptedModel:
    """按组件脚本应答的 ModelCollaborator。"""

    def __init__(
        self,
        scripts: Optional[Mapping[str, Sequence[ScriptItem]]] = None,
        *,
        default: Optional[ScriptItem] = None,
    ) -> None:
        """
        参数：
        - scripts：键为 `tier:name` 或 `name`；值为逐轮应答
        - default：未配置脚本的组件使用的应答（默认空 FinalAnswer）
        """

        self._scripts: Dict[str, List[ScriptItem]] = {k: list(v) for k, v in (scripts or {}).items()}
        self._default = default
        self._lock = threading.Lock()
        self.requests: List[ModelRequest] = []

    def _script_for(self, request: ModelRequest) -> Optional[List[ScriptItem]]:
        key = str(request.component)
        if key in self._scripts:
            return self._scripts[key]
        return self._scripts.get(request.component.name)

    def respond(self, request: ModelRequest) -> ModelReply:
        with self._lock:
            self.requests.append(request)
        script = self._script_for(request)
        if script is not None and request.iteration < len(script):
            item: Optional[ScriptItem] = script[request.iteration]
        elif script is None:
            item = self._default
        else:
            item = None
        return _resolve(item, request)

    def calls_for(self, component: str) -> List[ModelRequest]:
        with self._lock:
            return [r for r in self.requests if str(r.component) == component or r.component.name == component]


def _resolve(item: Optional[ScriptItem], request: ModelRequest) -> ModelReply:
    if item is None:
        return FinalAnswer()
    if isinstance(item, Delay):
        time.sleep(max(0.0, float(item.seconds)))
        return _resolve(item.reply, request)
    if callable(item):
        return item(request)
    return item


__all__ = ["Delay", "ScriptedModel"]
