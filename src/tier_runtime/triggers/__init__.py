"""Trigger Matcher（事件 → 有序 Skill 列表）。"""

from __future__ import annotations

from tier_runtime.triggers.matcher import TriggerMatcher, match_event

__all__ = ["TriggerMatcher", "match_event"]
