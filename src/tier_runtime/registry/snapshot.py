"""
Registry：不可变快照 + 可原子替换的指针。

要点：
- `RegistrySnapshot` 一经构造不再修改；reload 生成新快照并替换指针。
- 顶层调用在入口处取一次 `current()`，整个生命周期使用同一快照；
  reload 只对之后的新顶层调用可见。
- 环境开关（默认 model / 禁用 skill）只在 load 时读取。
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from tier_runtime.bootstrap import EnvToggles, read_env_toggles
from tier_runtime.core.contracts import Tier
from tier_runtime.core.errors import ConfigValidationError, FrameworkIssue
from tier_runtime.registry.loader import collect
from tier_runtime.registry.models import AgentDescriptor, CommandDescriptor, SkillDescriptor
from tier_runtime.registry.validator import apply_overrides, build_descriptor, validate_batch

logger = logging.getLogger(__name__)

Descriptor = Union[SkillDescriptor, AgentDescriptor, CommandDescriptor]

_VERSIONS = itertools.count(1)


class RegistrySnapshot:
    """
    只读 descriptor 快照。

    说明：
    - `descriptors` 保持注册顺序；`registration_index()` 给出该顺序（Trigger Matcher 排序用）。
    - 查找按 (tier, name)；name 只在 tier 命名空间内唯一。
    """

    __slots__ = ("_version", "_descriptors", "_index", "_order")

    def __init__(self, descriptors: Iterable[Descriptor], *, version: int = 0) -> None:
        items = tuple(descriptors)
        index: Dict[Tuple[Tier, str], Descriptor] = {}
        order: Dict[Tuple[Tier, str], int] = {}
        for i, d in enumerate(items):
            key = (d.tier_enum, d.name)
            if key in index:
                raise ValueError(f"duplicate descriptor in snapshot: {d.ref}")
            index[key] = d
            order[key] = i
        self._version = int(version)
        self._descriptors = items
        self._index = MappingProxyType(index)
        self._order = MappingProxyType(order)

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "_order"):
            raise AttributeError("RegistrySnapshot is immutable")
        object.__setattr__(self, name, value)

    @property
    def version(self) -> int:
        return self._version

    @property
    def descriptors(self) -> Tuple[Descriptor, ...]:
        return self._descriptors

    def get(self, tier: Tier, name: str) -> Optional[Descriptor]:
        return self._index.get((tier, str(name)))

    def registration_index(self, tier: Tier, name: str) -> int:
        return self._order.get((tier, str(name)), len(self._descriptors))

    def by_tier(self, tier: Tier) -> Tuple[Descriptor, ...]:
        return tuple(d for d in self._descriptors if d.tier_enum is tier)

    def skills(self) -> Tuple[SkillDescriptor, ...]:
        return tuple(d for d in self._descriptors if isinstance(d, SkillDescriptor))

    def agents(self) -> Tuple[AgentDescriptor, ...]:
        return tuple(d for d in self._descriptors if isinstance(d, AgentDescriptor))

    def commands(self) -> Tuple[CommandDescriptor, ...]:
        return tuple(d for d in self._descriptors if isinstance(d, CommandDescriptor))

    def __len__(self) -> int:
        return len(self._descriptors)


EMPTY_SNAPSHOT = RegistrySnapshot((), version=0)


@dataclass(frozen=True)
class LoadReport:
    """
    一次 load/reload 的结果。

    字段：
    - version：新快照版本
    - counts：各 tier 接受的 descriptor 数量
    - errors：被拒绝的 descriptor（逐条）
    - warnings：非致命问题（例如未知字段被收进 metadata）
    """

    version: int
    counts: Mapping[str, int]
    errors: Tuple[FrameworkIssue, ...] = ()
    warnings: Tuple[FrameworkIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_jsonable(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "counts": dict(self.counts),
            "errors": [e.to_jsonable() for e in self.errors],
            "warnings": [w.to_jsonable() for w in self.warnings],
        }


@dataclass(frozen=True)
class _LoadSources:
    descriptors: Tuple[Mapping[str, Any], ...] = ()
    files: Tuple[Path, ...] = ()
    roots: Tuple[Path, ...] = ()


def build_snapshot(
    *,
    descriptors: Iterable[Mapping[str, Any]] = (),
    files: Iterable[Path] = (),
    roots: Iterable[Path] = (),
    toggles: Optional[EnvToggles] = None,
) -> Tuple[RegistrySnapshot, LoadReport]:
    """
    收集 + 校验 + 构造快照（纯函数：不触碰任何全局指针）。

    返回：
    - (snapshot, report)：被拒绝的 descriptor 只出现在 report.errors 中
    """

    toggles = toggles or EnvToggles()
    collected = collect(descriptors=descriptors, files=files, roots=roots)
    errors: List[FrameworkIssue] = list(collected.errors)
    warnings: List[FrameworkIssue] = []
    parsed: List[Descriptor] = []
    for raw in collected.raws:
        try:
            desc, warns = build_descriptor(raw.data, source=raw.source, tier_hint=raw.tier_hint)
        except ConfigValidationError as exc:
            exc.details.setdefault("source", raw.source)
            logger.warning("descriptor rejected: %s", exc)
            errors.append(exc.to_issue())
            continue
        warnings.extend(warns)
        parsed.append(
            apply_overrides(desc, default_model=toggles.default_model, disabled_skills=toggles.disabled_skills)
        )

    accepted, batch_errors = validate_batch(parsed)
    for issue in batch_errors:
        logger.warning("descriptor rejected: %s %s", issue.code, issue.details.get("descriptor"))
    errors.extend(batch_errors)

    version = next(_VERSIONS)
    snapshot = RegistrySnapshot(accepted, version=version)
    counts = {t.value: len(snapshot.by_tier(t)) for t in Tier}
    report = LoadReport(version=version, counts=counts, errors=tuple(errors), warnings=tuple(warnings))
    return snapshot, report


class Registry:
    """
    descriptor 注册表（单个可替换的快照指针）。

    使用方式：
    - `load(...)` 收集并发布新快照，返回 `LoadReport`
    - `reload()` 以上一次的来源重新加载（重新读取环境开关）
    - `current()` 返回当前快照（顶层调用入口处调用一次）
    """

    def __init__(self, *, env: Optional[Mapping[str, str]] = None) -> None:
        """
        参数：
        - env：可选；环境变量映射（默认 `os.environ`，测试可注入）
        """

        self._env = env
        self._lock = threading.Lock()
        self._snapshot: RegistrySnapshot = EMPTY_SNAPSHOT
        self._sources = _LoadSources()
        self._last_report: Optional[LoadReport] = None

    def current(self) -> RegistrySnapshot:
        with self._lock:
            return self._snapshot

    @property
    def last_report(self) -> Optional[LoadReport]:
        return self._last_report

    def load(
        self,
        *,
        descriptors: Iterable[Mapping[str, Any]] = (),
        files: Iterable[Path] = (),
        roots: Iterable[Path] = (),
    ) -> LoadReport:
        """收集并校验 descriptor，原子替换快照。"""

        sources = _LoadSources(
            descriptors=tuple(descriptors),
            files=tuple(Path(f) for f in files),
            roots=tuple(Path(r) for r in roots),
        )
        return self._load(sources)

    def reload(self) -> LoadReport:
        """按上一次 load 的来源重新加载。"""

        with self._lock:
            sources = self._sources
        return self._load(sources)

    def _load(self, sources: _LoadSources) -> LoadReport:
        # 构造过程不持锁：只有最终的指针替换是临界区
        snapshot, report = build_snapshot(
            descriptors=sources.descriptors,
            files=sources.files,
            roots=sources.roots,
            toggles=read_env_toggles(self._env),
        )
        with self._lock:
            if snapshot.version <= self._snapshot.version:
                # 并发 load：更新的快照已发布，丢弃较旧的构造结果
                logger.info(
                    "registry snapshot v%s discarded: v%s is already published",
                    snapshot.version,
                    self._snapshot.version,
                )
                return report
            self._snapshot = snapshot
            self._sources = sources
            self._last_report = report
        logger.info(
            "registry snapshot v%s published: %s (%s rejected)",
            report.version,
            dict(report.counts),
            len(report.errors),
        )
        return report


__all__ = ["EMPTY_SNAPSHOT", "LoadReport", "Registry", "RegistrySnapshot", "build_snapshot"]
