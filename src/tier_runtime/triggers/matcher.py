"""
Trigger Matcher：根据触发事件从快照中选出应派发的 Skill（有序）。

规则：
- 只考虑 enabled 的 Skill
- fileSaved：路径匹配任一 file_patterns 且不匹配任何 exclude_patterns（exclude 永远优先）
- commit：任一变更路径按 fileSaved 规则命中，或 commit message 命中 trigger_keywords
- conversationText：trigger_keywords 大小写不敏感、按词边界匹配
- 排序：priority（high→medium→low）→ 注册顺序 → 名称（字典序兜底）
"""

from __future__ import annotations

import logging
import re
from fnmatch import fnmatchcase
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Pattern, Sequence

from tier_runtime.core.contracts import TriggerEvent, TriggerKind
from tier_runtime.registry.models import SkillDescriptor
from tier_runtime.registry.snapshot import RegistrySnapshot

logger = logging.getLogger(__name__)


def _normalize_path(path: str) -> str:
    text = str(path or "").strip().replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    return text


def _glob_variants(pattern: str) -> List[str]:
    """`**/` 可匹配零层目录：额外生成去掉 `**/` 的变体。"""

    pat = _normalize_path(pattern)
    out = [pat]
    stripped = pat
    while "**/" in stripped:
        stripped = stripped.replace("**/", "", 1)
        out.append(stripped)
    return out


def path_matches(path: str, pattern: str) -> bool:
    """
    glob 匹配（大小写敏感）。

    说明：
    - 含 `/` 的模式匹配完整相对路径；不含 `/` 的模式同时匹配 basename
    - `**/` 匹配零层或多层目录
    """

    p = _normalize_path(path)
    if not p or not str(pattern or "").strip():
        return False
    basename = PurePosixPath(p).name
    for pat in _glob_variants(pattern):
        if fnmatchcase(p, pat):
            return True
        if "/" not in pat and fnmatchcase(basename, pat):
            return True
    return False


def path_selected(path: str, include: Sequence[str], exclude: Sequence[str]) -> bool:
    """include 命中且 exclude 不命中（exclude 永远优先）。"""

    if not any(path_matches(path, pat) for pat in include):
        return False
    return not any(path_matches(path, pat) for pat in exclude)


@lru_cache(maxsize=1024)
def _keyword_regex(keyword: str) -> Pattern[str]:
    words = [re.escape(w) for w in keyword.split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"(?!\w)", re.IGNORECASE)


def keyword_matches(text: str, keywords: Iterable[str]) -> bool:
    """任一关键词（或短语）以完整 token 形式出现在 text 中（大小写不敏感）。"""

    if not text:
        return False
    for kw in keywords:
        kw = str(kw or "").strip()
        if kw and _keyword_regex(kw).search(text):
            return True
    return False


def skill_matches(skill: SkillDescriptor, event: TriggerEvent) -> bool:
    """判断单个 Skill 是否被事件命中（不检查 enabled）。"""

    payload = event.payload or {}
    if event.kind is TriggerKind.FILE_SAVED:
        return path_selected(str(payload.get("path") or ""), skill.file_patterns, skill.exclude_patterns)
    if event.kind is TriggerKind.COMMIT:
        paths = payload.get("paths") or []
        if any(path_selected(str(p), skill.file_patterns, skill.exclude_patterns) for p in paths):
            return True
        return keyword_matches(str(payload.get("message") or ""), skill.trigger_keywords)
    if event.kind is TriggerKind.CONVERSATION_TEXT:
        return keyword_matches(str(payload.get("text") or ""), skill.trigger_keywords)
    return False


class TriggerMatcher:
    """对快照求值触发事件，返回按调度顺序排列的 Skill 列表。"""

    def match(self, event: TriggerEvent, snapshot: RegistrySnapshot) -> List[SkillDescriptor]:
        matched: List[SkillDescriptor] = []
        for skill in snapshot.skills():
            if not skill.enabled:
                continue
            if skill_matches(skill, event):
                matched.append(skill)
        matched.sort(key=lambda s: (s.priority.rank, snapshot.registration_index(s.tier_enum, s.name), s.name))
        logger.debug("event %s matched skills: %s", event.kind.value, [s.name for s in matched])
        return matched


def match_event(event: TriggerEvent, snapshot: RegistrySnapshot, *, matcher: Optional[TriggerMatcher] = None) -> List[SkillDescriptor]:
    """便捷函数：`TriggerMatcher().match(event, snapshot)`。"""

    return (matcher or TriggerMatcher()).match(event, snapshot)


__all__ = ["TriggerMatcher", "keyword_matches", "match_event", "path_matches", "path_selected", "skill_matches"]
