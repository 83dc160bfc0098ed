"""运行时配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from tier_runtime.config.loader import RuntimeConfig, load_config, load_config_dicts

__all__ = ["RuntimeConfig", "load_config", "load_config_dicts"]
