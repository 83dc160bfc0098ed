"""
Bootstrap Layer（配置发现 / 环境开关 / 日志初始化）。

设计目标：
- 核心运行时不做隐式 I/O：Registry/Runtime 不会自己去发现 overlay 或读 env
- 环境开关只在 registry 加载时读取一次；修改后需要 reload 才生效
- CLI 与宿主复用同一套发现规则
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from tier_runtime.config.defaults import load_default_config_dict
from tier_runtime.config.loader import RuntimeConfig, load_config_dicts

ENV_DEBUG = "TIER_RUNTIME_DEBUG"
ENV_DEFAULT_MODEL = "TIER_RUNTIME_DEFAULT_MODEL"
ENV_DISABLED_SKILLS = "TIER_RUNTIME_DISABLED_SKILLS"
ENV_CONFIG_PATHS = "TIER_RUNTIME_CONFIG_PATHS"

_TRUTHY = {"1", "true", "yes", "on"}
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    """

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的串切分为片段列表（去空白与空项，保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


@dataclass(frozen=True)
class EnvToggles:
    """
    进程级环境开关（registry 加载时读取）。

    字段：
    - debug：强制 DEBUG 日志
    - default_model：覆盖所有未声明 model（或声明为 inherit）的 descriptor
    - disabled_skills：强制禁用的 Skill 名称集合
    """

    debug: bool = False
    default_model: Optional[str] = None
    disabled_skills: FrozenSet[str] = field(default_factory=frozenset)


def read_env_toggles(env: Optional[Mapping[str, str]] = None) -> EnvToggles:
    """从 env（默认 `os.environ`）读取环境开关。"""

    debug_raw = _get_env_nonempty(ENV_DEBUG, env=env) or ""
    disabled_raw = _get_env_nonempty(ENV_DISABLED_SKILLS, env=env) or ""
    return EnvToggles(
        debug=debug_raw.lower() in _TRUTHY,
        default_model=_get_env_nonempty(ENV_DEFAULT_MODEL, env=env),
        disabled_skills=frozenset(_split_paths(disabled_raw)),
    )


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/tier_runtime.yaml`
    2) `TIER_RUNTIME_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []

    default_overlay = (ws / "config" / "tier_runtime.yaml").resolve()
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = _get_env_nonempty(ENV_CONFIG_PATHS, env=env) or ""
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        pp = pp.resolve() if pp.is_absolute() else (ws / pp).resolve()
        overlays.append(pp)

    # 去重（按 canonical path；保序）
    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并确保根节点是 mapping(dict)。

    异常：
    - ValueError：文件不存在或 YAML 根节点不是 mapping。
    """

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


@dataclass(frozen=True)
class ResolvedRuntimeConfig:
    """bootstrap 解析结果：有效配置 + 参与合并的 overlay + 环境开关。"""

    config: RuntimeConfig
    overlay_paths: list[str]
    toggles: EnvToggles
    workspace_root: str


def resolve_runtime_config(
    *,
    workspace_root: Path,
    config_paths: Optional[list[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ResolvedRuntimeConfig:
    """
    解析有效配置：内置默认 → 发现的 overlay → 显式 config_paths（后者覆盖前者）。

    说明：
    - registry.roots / registry.files 中的相对路径相对 workspace_root 解析。
    """

    ws = Path(workspace_root).resolve()
    overlay_paths = discover_overlay_paths(workspace_root=ws, env=env)
    for p in config_paths or []:
        pp = Path(p).expanduser()
        overlay_paths.append(pp.resolve() if pp.is_absolute() else (ws / pp).resolve())

    dicts: list[Dict[str, Any]] = [load_default_config_dict()]
    for p in overlay_paths:
        dicts.append(_load_yaml_mapping(p))
    cfg = load_config_dicts(dicts)

    registry = cfg.registry.model_copy(
        update={
            "roots": [str(_anchor(ws, r)) for r in cfg.registry.roots],
            "files": [str(_anchor(ws, f)) for f in cfg.registry.files],
        }
    )
    cfg = cfg.model_copy(update={"registry": registry})
    return ResolvedRuntimeConfig(
        config=cfg,
        overlay_paths=[str(p) for p in overlay_paths],
        toggles=read_env_toggles(env),
        workspace_root=str(ws),
    )


def _anchor(ws: Path, raw: str) -> Path:
    p = Path(raw).expanduser()
    return p if p.is_absolute() else (ws / p)


def configure_logging(config: Optional[RuntimeConfig] = None, *, env: Optional[Mapping[str, str]] = None) -> int:
    """
    初始化包级日志（幂等：只安装一次 handler）。

    返回：
    - int：最终生效的日志级别
    """

    level_name = config.logging.level if config is not None else "WARNING"
    if read_env_toggles(env).debug:
        level_name = "DEBUG"
    level = getattr(logging, level_name, logging.WARNING)

    pkg_logger = logging.getLogger("tier_runtime")
    if not any(getattr(h, "_tier_runtime_handler", False) for h in pkg_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._tier_runtime_handler = True  # type: ignore[attr-defined]
        pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
    return level


__all__ = [
    "ENV_CONFIG_PATHS",
    "ENV_DEBUG",
    "ENV_DEFAULT_MODEL",
    "ENV_DISABLED_SKILLS",
    "EnvToggles",
    "ResolvedRuntimeConfig",
    "configure_logging",
    "discover_overlay_paths",
    "read_env_toggles",
    "resolve_runtime_config",
]
