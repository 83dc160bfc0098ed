"""
Descriptor 加载（dict / YAML / JSON / Markdown frontmatter / 目录树）。

目录约定（registry root）：
- `skills/<category>/<name>/SKILL.md`
- `agents/<name>/agent.json`（或 `agent.yaml` / `AGENT.md`），以及平铺的 `agents/<name>.md`
- `commands/<category>/<name>/command.json`（或 `command.yaml` / `COMMAND.md`）

说明：
- Markdown 文件：frontmatter 为 descriptor 字段，正文作为不透明的 `instructions` 文本。
- 未声明 `name` 时取目录名（平铺 Markdown 取文件名）；未声明 `category` 时取上级目录名。
- 扫描顺序为排序后的路径顺序，即 registry 的注册顺序。
- 单个文件读取/解析失败只产生该文件的 `ConfigValidationError`，不影响其它文件。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from tier_runtime.core.contracts import Tier
from tier_runtime.core.errors import ConfigValidationError, FrameworkIssue

logger = logging.getLogger(__name__)

_SKILL_FILES = ("SKILL.md",)
_AGENT_FILES = ("agent.json", "agent.yaml", "agent.yml", "AGENT.md")
_COMMAND_FILES = ("command.json", "command.yaml", "command.yml", "COMMAND.md")

# 多 descriptor 文件的分组键 -> tier
_GROUP_KEYS = {"skills": Tier.SKILL, "agents": Tier.AGENT, "commands": Tier.COMMAND}


@dataclass(frozen=True)
class RawDescriptor:
    """
    未校验的 descriptor 记录。

    字段：
    - data：原始字段
    - source：来源定位（文件路径或 `<inline>`）
    - tier_hint：按位置推断的 tier（记录未声明 tier 时使用）
    """

    data: Mapping[str, Any]
    source: str = "<inline>"
    tier_hint: Optional[Tier] = None


@dataclass
class CollectedDescriptors:
    """一次收集的结果：按注册顺序的原始记录 + 文件级错误。"""

    raws: List[RawDescriptor] = field(default_factory=list)
    errors: List[FrameworkIssue] = field(default_factory=list)


def split_frontmatter(text: str) -> Tuple[Dict[str, Any], str]:
    """
    将 Markdown 拆分为 frontmatter 与 body。

    约定：
    - frontmatter 必须以 `---` 开始并以第二个 `---` 结束
    - 若不满足：视为无 frontmatter（返回空 dict + 原文 body）

    异常：
    - ConfigValidationError：frontmatter 存在但不是合法 YAML mapping
    """

    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return {}, text

    fm_lines: List[str] = []
    end_idx = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_idx = i
            break
        fm_lines.append(lines[i])
    if end_idx is None:
        return {}, text

    body = "".join(lines[end_idx + 1 :])
    try:
        obj = yaml.safe_load("".join(fm_lines)) or {}
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Frontmatter is not valid YAML: {exc}", code="DESCRIPTOR_UNREADABLE") from None
    if not isinstance(obj, dict):
        raise ConfigValidationError("Frontmatter must be a mapping.", code="DESCRIPTOR_UNREADABLE")
    return obj, body


def _structured_records(obj: Any, *, source: str, tier_hint: Optional[Tier]) -> List[RawDescriptor]:
    """把 YAML/JSON 根对象展开为记录列表（单个 mapping / 列表 / 按 tier 分组）。"""

    if isinstance(obj, list):
        out: List[RawDescriptor] = []
        for i, item in enumerate(obj):
            out.append(RawDescriptor(data=item, source=f"{source}#{i}", tier_hint=tier_hint))
        return out
    if not isinstance(obj, dict):
        raise ConfigValidationError("Descriptor file root must be a mapping or a list.", code="DESCRIPTOR_UNREADABLE")
    if obj and set(obj.keys()) <= set(_GROUP_KEYS.keys()):
        out = []
        for key, tier in _GROUP_KEYS.items():
            items = obj.get(key) or []
            if not isinstance(items, list):
                raise ConfigValidationError(f"Group {key!r} must be a list.", code="DESCRIPTOR_UNREADABLE")
            for i, item in enumerate(items):
                out.append(RawDescriptor(data=item, source=f"{source}#{key}[{i}]", tier_hint=tier))
        return out
    return [RawDescriptor(data=obj, source=source, tier_hint=tier_hint)]


def read_descriptor_file(
    path: Path,
    *,
    tier_hint: Optional[Tier] = None,
    defaults: Optional[Mapping[str, Any]] = None,
) -> List[RawDescriptor]:
    """
    读取单个 descriptor 文件。

    参数：
    - path：`.md` / `.yaml` / `.yml` / `.json`
    - tier_hint：按位置推断的 tier
    - defaults：按位置推断的字段缺省值（例如 name/category）；记录自身声明优先

    异常：
    - ConfigValidationError：文件不可读或无法解析
    """

    p = Path(path)
    source = str(p)
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigValidationError(f"Descriptor file is unreadable: {exc}", code="DESCRIPTOR_UNREADABLE", descriptor=source) from None

    suffix = p.suffix.lower()
    try:
        if suffix == ".md":
            fm, body = split_frontmatter(text)
            data: Dict[str, Any] = dict(defaults or {})
            data.update(fm)
            if body.strip() and "instructions" not in fm:
                data["instructions"] = body.strip()
            records = [RawDescriptor(data=data, source=source, tier_hint=tier_hint)]
        elif suffix in (".yaml", ".yml"):
            records = _structured_records(yaml.safe_load(text), source=source, tier_hint=tier_hint)
        elif suffix == ".json":
            records = _structured_records(json.loads(text), source=source, tier_hint=tier_hint)
        else:
            raise ConfigValidationError(f"Unsupported descriptor file type: {suffix or '<none>'}", code="DESCRIPTOR_UNREADABLE")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigValidationError(f"Descriptor file cannot be parsed: {exc}", code="DESCRIPTOR_UNREADABLE", descriptor=source) from None
    except ConfigValidationError as exc:
        exc.details.setdefault("descriptor", source)
        raise

    if defaults and suffix != ".md" and len(records) == 1:
        merged = []
        for r in records:
            if isinstance(r.data, Mapping):
                data = dict(defaults)
                data.update(r.data)
                merged.append(RawDescriptor(data=data, source=r.source, tier_hint=r.tier_hint))
            else:
                merged.append(r)
        records = merged
    return records


def _pick_file(directory: Path, candidates: Iterable[str]) -> Optional[Path]:
    for name in candidates:
        p = directory / name
        if p.is_file():
            return p
    return None


def _scan_tree(base: Path, *, tier: Tier, candidates: Tuple[str, ...], with_category: bool) -> List[Tuple[Path, Dict[str, Any]]]:
    """扫描 `<base>/**/<candidate>`；返回（文件路径, 位置推断的缺省字段）。"""

    found: List[Tuple[Path, Dict[str, Any]]] = []
    if not base.is_dir():
        return found
    for directory in sorted(p for p in base.rglob("*") if p.is_dir() and not p.name.startswith(".")):
        f = _pick_file(directory, candidates)
        if f is None:
            continue
        defaults: Dict[str, Any] = {"name": directory.name}
        if with_category and directory.parent != base:
            defaults["category"] = directory.parent.name
        found.append((f, defaults))
    if tier is Tier.AGENT:
        for f in sorted(base.glob("*.md")):
            if f.name in candidates:
                continue
            found.append((f, {"name": f.stem}))
    return sorted(found, key=lambda x: str(x[0]))


def discover_root(root: Path) -> CollectedDescriptors:
    """
    扫描一个 registry root 目录。

    返回：
    - CollectedDescriptors：records 按 tier（skills→agents→commands）再按路径排序
    """

    root = Path(root)
    out = CollectedDescriptors()
    if not root.is_dir():
        out.errors.append(
            FrameworkIssue(code="REGISTRY_ROOT_MISSING", message="Registry root is not a directory.", details={"root": str(root)})
        )
        return out

    layout = (
        ("skills", Tier.SKILL, _SKILL_FILES, True),
        ("agents", Tier.AGENT, _AGENT_FILES, False),
        ("commands", Tier.COMMAND, _COMMAND_FILES, True),
    )
    for dirname, tier, candidates, with_category in layout:
        for path, defaults in _scan_tree(root / dirname, tier=tier, candidates=candidates, with_category=with_category):
            try:
                out.raws.extend(read_descriptor_file(path, tier_hint=tier, defaults=defaults))
            except ConfigValidationError as exc:
                logger.warning("descriptor file rejected: %s (%s)", path, exc)
                out.errors.append(exc.to_issue())
    return out


def collect(
    *,
    descriptors: Iterable[Mapping[str, Any]] = (),
    files: Iterable[Path] = (),
    roots: Iterable[Path] = (),
) -> CollectedDescriptors:
    """
    按顺序收集 descriptor 记录：inline → files → roots。

    参数：
    - descriptors：内存中的原始 dict
    - files：descriptor 文件
    - roots：registry root 目录
    """

    out = CollectedDescriptors()
    for i, d in enumerate(descriptors):
        out.raws.append(RawDescriptor(data=d, source=f"<inline>#{i}"))
    for f in files:
        try:
            out.raws.extend(read_descriptor_file(Path(f)))
        except ConfigValidationError as exc:
            logger.warning("descriptor file rejected: %s (%s)", f, exc)
            out.errors.append(exc.to_issue())
    for r in roots:
        found = discover_root(Path(r))
        out.raws.extend(found.raws)
        out.errors.extend(found.errors)
    return out


__all__ = ["CollectedDescriptors", "RawDescriptor", "collect", "discover_root", "read_descriptor_file", "split_frontmatter"]
