"""
核心运行时：契约、调用上下文、deadline、调度、报告聚合与调用管线。

说明：
- 本包 `__init__` 不做导入，避免 registry/safety 与 core 之间的循环导入；请从具体子模块导入。
"""
