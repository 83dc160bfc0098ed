"""
能力（capability）命名与归一化。

说明：
- descriptor 可以直接写规范能力名（`read/write/edit/search/...`），
  也可以写宿主的工具名（`Read/Grep/Bash/Task/...`），加载时统一归一化。
- `*` 表示“不限制”（仅 Agent/Command 可用；Skill 使用会被视为包含禁止能力）。
"""

from __future__ import annotations

from typing import FrozenSet, Iterable

READ = "read"
WRITE = "write"
EDIT = "edit"
SEARCH = "search"
WEB = "web"
EXECUTE_EXTERNAL_PROCESS = "execute-external-process"
INVOKE_COMPONENT = "invoke-component"

ALL = "*"

# Skill 永远不得持有的能力：这是阻止向上/环形升级的结构性保证。
FORBIDDEN_FOR_SKILLS: FrozenSet[str] = frozenset({EXECUTE_EXTERNAL_PROCESS, INVOKE_COMPONENT, ALL})

DEFAULT_SKILL_TOOLS: FrozenSet[str] = frozenset({READ, SEARCH})

_ALIASES = {
    "read": READ,
    "notebookread": READ,
    "write": WRITE,
    "edit": EDIT,
    "multiedit": EDIT,
    "notebookedit": EDIT,
    "grep": SEARCH,
    "glob": SEARCH,
    "ls": SEARCH,
    "search": SEARCH,
    "bash": EXECUTE_EXTERNAL_PROCESS,
    "shell": EXECUTE_EXTERNAL_PROCESS,
    "execute-external-process": EXECUTE_EXTERNAL_PROCESS,
    "task": INVOKE_COMPONENT,
    "agent": INVOKE_COMPONENT,
    "invoke-component": INVOKE_COMPONENT,
    "webfetch": WEB,
    "websearch": WEB,
    "web": WEB,
}


def normalize_capability(raw: str) -> str:
    """把工具名/能力名归一化为规范能力名；未知名字按小写原样保留。"""

    text = str(raw or "").strip()
    if text == ALL:
        return ALL
    key = text.lower().replace("_", "-")
    return _ALIASES.get(key, _ALIASES.get(key.replace("-", ""), key))


def normalize_capabilities(raw: Iterable[str]) -> FrozenSet[str]:
    """归一化一组能力名（去空、去重）。"""

    out = set()
    for item in raw:
        name = normalize_capability(item)
        if name:
            out.add(name)
    return frozenset(out)


def intersect(caller: FrozenSet[str], callee: FrozenSet[str]) -> FrozenSet[str]:
    """求允许集合交集；`*` 视为全集。"""

    if ALL in caller:
        return frozenset(callee)
    if ALL in callee:
        return frozenset(caller)
    return frozenset(caller & callee)


def allows(allowed: FrozenSet[str], capability: str) -> bool:
    """判断 allowed 是否覆盖某个能力。"""

    return ALL in allowed or normalize_capability(capability) in allowed
