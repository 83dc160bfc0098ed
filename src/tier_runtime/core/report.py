"""
Report Aggregator：把调用子树的 findings 合并为顶层调用方的一份报告。

规则：
- 扁平化：收集子树中每个节点的 findings；Command 节点额外为失败的 step 生成注解 finding
- 排序：severity 降序，其次按组件的调用序号（而非完成顺序）；同一节点内保持产出顺序
- 去重：按 (source_component, message) 相等；保留排序后的第一条（即最高 severity）
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Set, Tuple

from tier_runtime.core.contracts import (
    Finding,
    InvocationResult,
    InvocationStatus,
    Severity,
    StepOutcome,
    StepPolicy,
)


def step_finding(outcome: StepOutcome, *, source: str, sequence: int) -> Finding:
    """为一个失败的 step 生成注解 finding（category 为 step 状态）。"""

    if outcome.status is InvocationStatus.SKIPPED:
        severity = Severity.INFO
    elif outcome.policy is StepPolicy.REQUIRED:
        severity = Severity.ERROR
    else:
        severity = Severity.WARNING
    target = f" ({outcome.target})" if outcome.target else ""
    message = f"step {outcome.step_id}{target} {outcome.status.value}"
    if outcome.reason:
        message = f"{message}: {outcome.reason}"
    return Finding(
        source_component=source,
        severity=severity,
        message=message,
        category=outcome.status.value,
        sequence=sequence,
    )


class ReportAggregator:
    """findings 合并器（无状态）。"""

    def flatten(self, result: InvocationResult) -> List[Finding]:
        """前序遍历子树收集 findings（子节点按调用序号排序，不依赖完成顺序）。"""

        out: List[Finding] = list(result.findings)
        source = result.component.name if result.component is not None else "?"
        for outcome in result.steps:
            if outcome.failed:
                out.append(step_finding(outcome, source=source, sequence=result.sequence))
        for child in sorted(result.children, key=lambda c: c.sequence):
            out.extend(self.flatten(child))
        return out

    def merge(self, findings: Iterable[Finding]) -> Tuple[Finding, ...]:
        """排序 + 去重。"""

        ordered = sorted(findings, key=lambda f: (-f.severity.weight, f.sequence))
        seen: Set[Tuple[str, str]] = set()
        merged: List[Finding] = []
        for f in ordered:
            key = (f.source_component, f.message)
            if key in seen:
                continue
            seen.add(key)
            merged.append(f)
        return tuple(merged)

    def aggregate(self, result: InvocationResult) -> InvocationResult:
        """返回 findings 替换为整棵子树合并报告的结果。"""

        return replace(result, findings=self.merge(self.flatten(result)))


__all__ = ["ReportAggregator", "step_finding"]
