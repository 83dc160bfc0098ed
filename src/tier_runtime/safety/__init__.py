"""
Safety（Capability Sandbox + Invocation Graph Controller）模块。

说明：
- `capabilities`：能力名规范化与交集
- `sandbox`：逐次工具调用的能力检查
- `graph`：调用边（tier 表）、环与深度检查

`core.context` 依赖 `capabilities`，而 `graph`/`sandbox` 依赖 `core.context`；本 `__init__` 不做导入。
"""
