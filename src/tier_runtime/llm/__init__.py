"""外部模型协作方协议与离线脚本化实现。"""

from __future__ import annotations

from tier_runtime.llm.fake import Delay, ScriptedModel
from tier_runtime.llm.protocol import FinalAnswer, ModelCollaborator, ModelRequest, ToolUseRequest

__all__ = ["Delay", "FinalAnswer", "ModelCollaborator", "ModelRequest", "ScriptedModel", "ToolUseRequest"]
