"""
Descriptor validation.

These helpers are pure functions over raw records / parsed descriptors so they
can be tested without a Registry instance. Per-descriptor problems raise
`ConfigValidationError`; batch-level problems are returned as `FrameworkIssue`
lists so one bad descriptor never blocks the rest of a load.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from tier_runtime.core.contracts import Tier
from tier_runtime.core.errors import ConfigValidationError, FrameworkIssue
from tier_runtime.registry.models import (
    DESCRIPTOR_FIELDS,
    AgentDescriptor,
    CommandDescriptor,
    SkillDescriptor,
    as_str_list,
    parse_descriptor,
)
from tier_runtime.safety.capabilities import FORBIDDEN_FOR_SKILLS, normalize_capabilities

Descriptor = Union[SkillDescriptor, AgentDescriptor, CommandDescriptor]

# Host-side spellings accepted for the canonical field names.
FIELD_ALIASES: Dict[str, str] = {
    "toolAllowList": "tools",
    "tool_allow_list": "tools",
    "allowed-tools": "tools",
    "allowed_tools": "tools",
    "triggerKeywords": "trigger_keywords",
    "trigger-keywords": "trigger_keywords",
    "keywords": "trigger_keywords",
    "filePatterns": "file_patterns",
    "file-patterns": "file_patterns",
    "excludePatterns": "exclude_patterns",
    "exclude-patterns": "exclude_patterns",
    "maxIterations": "max_iterations",
    "max-iterations": "max_iterations",
    "invokableAgents": "agents",
    "invokable_agents": "agents",
}

INHERIT_MODEL = "inherit"


def _issue(code: str, message: str, **details: Any) -> FrameworkIssue:
    return FrameworkIssue(code=code, message=message, details=dict(details))


def _format_validation_error(exc: ValidationError) -> Tuple[str, List[Dict[str, Any]]]:
    """Flatten a pydantic ValidationError into a message + per-field list."""

    fields: List[Dict[str, Any]] = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()) if x not in ("skill", "agent", "command"))
        fields.append({"field": loc, "reason": str(err.get("msg", ""))})
    summary = "; ".join(f"{f['field'] or '<root>'}: {f['reason']}" for f in fields) or str(exc)
    return summary, fields


def normalize_raw(raw: Mapping[str, Any], *, tier_hint: Optional[Tier] = None) -> Dict[str, Any]:
    """
    Normalize a raw descriptor record before model validation.

    - rename host-side field spellings to canonical names
    - fill `tier` from the location hint when the record does not declare one
    - move unknown keys into `metadata` (returned under the `_unknown` key for reporting)
    """

    data: Dict[str, Any] = {}
    for key, value in raw.items():
        data[FIELD_ALIASES.get(str(key), str(key))] = value

    if "tier" not in data or data.get("tier") in (None, ""):
        if tier_hint is None:
            raise ConfigValidationError("Descriptor does not declare a tier.", code="UNKNOWN_TIER", descriptor=data.get("name"))
        data["tier"] = tier_hint.value
    try:
        tier = Tier.parse(data["tier"])
    except ValueError:
        raise ConfigValidationError(
            f"Unknown tier: {data['tier']!r}.",
            code="UNKNOWN_TIER",
            descriptor=str(data.get("name") or ""),
            details={"actual": data["tier"], "allowed": [t.value for t in Tier]},
        ) from None
    data["tier"] = tier.value

    # model: inherit 等同于未声明
    if str(data.get("model") or "").strip().lower() == INHERIT_MODEL:
        data["model"] = ""

    known = DESCRIPTOR_FIELDS[tier]
    unknown = sorted(k for k in data if k not in known)
    if unknown:
        metadata = dict(data.get("metadata") or {})
        for key in unknown:
            metadata[key] = data.pop(key)
        data["metadata"] = metadata
        data["_unknown"] = unknown
    return data


def build_descriptor(
    raw: Mapping[str, Any],
    *,
    source: Optional[str] = None,
    tier_hint: Optional[Tier] = None,
) -> Tuple[Descriptor, List[FrameworkIssue]]:
    """
    Validate one raw record into a typed descriptor.

    Returns:
    - (descriptor, warnings): warnings list unknown keys moved into metadata

    Raises:
    - ConfigValidationError: missing/invalid fields, unknown tier, forbidden skill capabilities
    """

    if not isinstance(raw, Mapping):
        raise ConfigValidationError("Descriptor must be a mapping.", descriptor=source)

    data = normalize_raw(raw, tier_hint=tier_hint)
    unknown = data.pop("_unknown", [])
    if source is not None and not data.get("source"):
        data["source"] = source
    label = f"{data['tier']}:{data.get('name') or '?'}"

    # 显式给出错误码：Skill 的禁止能力单独报告，便于宿主定位
    if data["tier"] == Tier.SKILL.value and data.get("tools") is not None:
        try:
            tools = normalize_capabilities(as_str_list(data["tools"]))
        except ValueError:
            tools = frozenset()
        bad = sorted(tools & FORBIDDEN_FOR_SKILLS)
        if bad:
            raise ConfigValidationError(
                "Skill tool allow-list contains forbidden capabilities.",
                code="SKILL_FORBIDDEN_CAPABILITY",
                descriptor=label,
                details={"forbidden": bad, "source": source},
            )

    try:
        descriptor = parse_descriptor(data)
    except ValidationError as exc:
        summary, fields = _format_validation_error(exc)
        raise ConfigValidationError(
            f"Descriptor is invalid: {summary}",
            descriptor=label,
            details={"fields": fields, "source": source},
        ) from None

    warnings: List[FrameworkIssue] = []
    if unknown:
        warnings.append(
            _issue(
                "DESCRIPTOR_UNKNOWN_FIELDS",
                "Unknown descriptor fields were moved into metadata.",
                descriptor=label,
                fields=list(unknown),
                source=source,
                level="warning",
            )
        )
    return descriptor, warnings


def _find_cycle(deps: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """Return one dependency cycle (as a list of step ids) or None."""

    state: Dict[str, int] = {}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        state[node] = 1
        stack.append(node)
        for dep in deps.get(node, ()):
            if dep not in deps:
                continue
            if state.get(dep) == 1:
                return stack[stack.index(dep) :] + [dep]
            if state.get(dep) is None:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        state[node] = 2
        return None

    for node in deps:
        if state.get(node) is None:
            found = visit(node)
            if found:
                return found
    return None


def validate_workflow(command: CommandDescriptor) -> List[FrameworkIssue]:
    """
    Validate a command workflow graph.

    Checks duplicate step ids, unknown dependency ids, dependency cycles and
    agent steps whose agent is not listed in `agents[]`.
    """

    label = str(command.ref)
    issues: List[FrameworkIssue] = []
    steps = command.effective_workflow()
    seen: Set[str] = set()
    for step in steps:
        if step.id in seen:
            issues.append(_issue("WORKFLOW_INVALID", "Duplicate workflow step id.", descriptor=label, step=step.id))
        seen.add(step.id)
    invokable = set(command.invokable_agents)
    for step in steps:
        for dep in step.depends_on:
            if dep not in seen:
                issues.append(
                    _issue("WORKFLOW_INVALID", "Workflow step depends on an unknown step.", descriptor=label, step=step.id, depends_on=dep)
                )
            if dep == step.id:
                issues.append(_issue("WORKFLOW_INVALID", "Workflow step depends on itself.", descriptor=label, step=step.id))
        if step.agent and step.agent not in invokable:
            issues.append(
                _issue(
                    "WORKFLOW_INVALID",
                    "Workflow step calls an agent not listed in agents[].",
                    descriptor=label,
                    step=step.id,
                    agent=step.agent,
                )
            )
    cycle = _find_cycle({s.id: list(s.depends_on) for s in steps})
    if cycle:
        issues.append(_issue("WORKFLOW_INVALID", "Workflow dependency cycle.", descriptor=label, cycle=cycle))
    return issues


def apply_overrides(
    descriptor: Descriptor,
    *,
    default_model: Optional[str] = None,
    disabled_skills: Iterable[str] = (),
) -> Descriptor:
    """Apply load-time environment overrides (default model, per-skill disable)."""

    update: Dict[str, Any] = {}
    if default_model and not descriptor.model:
        update["model"] = default_model
    if isinstance(descriptor, SkillDescriptor) and descriptor.name in set(disabled_skills) and descriptor.enabled:
        update["enabled"] = False
    if not update:
        return descriptor
    return descriptor.model_copy(update=update)


def validate_batch(
    descriptors: Sequence[Descriptor],
) -> Tuple[List[Descriptor], List[FrameworkIssue]]:
    """
    Cross-descriptor validation.

    - later duplicates (same tier + name) are rejected; the first registration wins
    - commands with an invalid workflow are rejected

    Returns:
    - (accepted descriptors in input order, errors)
    """

    accepted: List[Descriptor] = []
    errors: List[FrameworkIssue] = []
    seen: Dict[Tuple[str, str], Optional[str]] = {}
    for desc in descriptors:
        key = (desc.tier, desc.name)
        if key in seen:
            errors.append(
                _issue(
                    "DUPLICATE_NAME",
                    "Duplicate component name within tier.",
                    descriptor=str(desc.ref),
                    source=desc.source,
                    first_source=seen[key],
                )
            )
            continue
        if isinstance(desc, CommandDescriptor):
            wf_issues = validate_workflow(desc)
            if wf_issues:
                errors.extend(wf_issues)
                continue
        seen[key] = desc.source
        accepted.append(desc)
    return accepted, errors


__all__ = [
    "FIELD_ALIASES",
    "apply_overrides",
    "build_descriptor",
    "normalize_raw",
    "validate_batch",
    "validate_workflow",
]
