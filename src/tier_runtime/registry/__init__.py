"""Descriptor registry：加载、校验与不可变快照。"""

from __future__ import annotations

from tier_runtime.registry.models import AgentDescriptor, CommandDescriptor, SkillDescriptor, WorkflowStep
from tier_runtime.registry.snapshot import LoadReport, Registry, RegistrySnapshot

__all__ = [
    "AgentDescriptor",
    "CommandDescriptor",
    "LoadReport",
    "Registry",
    "RegistrySnapshot",
    "SkillDescriptor",
    "WorkflowStep",
]
