"""
调用行解析：`/name --flag value ...`（Command）与 `@name <free text>`（Agent）。

参数绑定规则（按 Command 的 parameters schema）：
- `--flag value` / `--flag=value`；flag 名中的 `-` 与 `_` 等价
- boolean：裸 `--flag` 为 true，`--no-flag` 为 false，也接受 true/false/yes/no/on/off/1/0
- number：整数字面量得到 int，其它数字得到 float
- array：重复 flag 累加，单个值按逗号切分
- 未声明的 flag、缺失的 required 参数、非法字面量 → UserError
- 其余位置参数拼接为 `input`；未提供的参数使用 default
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from tier_runtime.core.contracts import Tier
from tier_runtime.core.errors import UserError
from tier_runtime.registry.models import ParameterSpec

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


@dataclass(frozen=True)
class InvocationLine:
    """
    解析后的调用行。

    字段：
    - tier：COMMAND（`/`）或 AGENT（`@`）
    - name：目标组件名
    - tokens：Command 的参数 token（shlex 切分）
    - text：Agent 的自由文本（原样保留）
    """

    tier: Tier
    name: str
    tokens: Tuple[str, ...] = ()
    text: str = ""


@dataclass(frozen=True)
class BoundArguments:
    """绑定结果：参数值 + 位置文本。"""

    parameters: Dict[str, Any] = field(default_factory=dict)
    input: str = ""


def parse_invocation_line(line: str) -> InvocationLine:
    """
    解析一行调用。

    异常：
    - UserError：不是 `/` 或 `@` 开头、缺少名称、引号不配对
    """

    text = str(line or "").strip()
    if len(text) < 2 or text[0] not in "/@":
        raise UserError("invocation line must start with '/' (command) or '@' (agent)", code="INVOCATION_LINE_INVALID")
    sigil, body = text[0], text[1:]
    # 名称紧跟前缀；之后任意空白（空格/制表符/换行）分隔参数
    parts = body.split(None, 1) if not body[0].isspace() else []
    name = parts[0] if parts else ""
    rest = parts[1] if len(parts) > 1 else ""
    if not name:
        raise UserError("invocation line is missing a component name", code="INVOCATION_LINE_INVALID")
    if sigil == "@":
        return InvocationLine(tier=Tier.AGENT, name=name, text=rest.strip())
    try:
        tokens = tuple(shlex.split(rest))
    except ValueError as exc:
        raise UserError(f"cannot parse invocation line: {exc}", code="INVOCATION_LINE_INVALID") from None
    return InvocationLine(tier=Tier.COMMAND, name=name, tokens=tokens)


def _resolve_param(name: str, spec: Mapping[str, ParameterSpec]) -> Optional[str]:
    for candidate in (name, name.replace("-", "_"), name.replace("_", "-")):
        if candidate in spec:
            return candidate
    return None


def _parse_bool(raw: Any, *, param: str) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise UserError(f"parameter --{param} expects a boolean, got {raw!r}", code="PARAMETER_INVALID", details={"parameter": param})


def _parse_number(raw: Any, *, param: str) -> Any:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw
    text = str(raw).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise UserError(
            f"parameter --{param} expects a number, got {raw!r}", code="PARAMETER_INVALID", details={"parameter": param}
        ) from None


def _split_array(raw: Any) -> List[str]:
    if isinstance(raw, (list, tuple)):
        items: List[str] = []
        for x in raw:
            items.extend(_split_array(x))
        return items
    return [x.strip() for x in str(raw).split(",") if x.strip()]


def coerce_parameters(spec: Mapping[str, ParameterSpec], raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    按 schema 校验并转换参数值（未提供的取 default；required 缺失报错）。

    参数：
    - spec：Command 的 parameters schema
    - raw：参数名 → 值（字符串或已是目标类型）
    """

    out: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _resolve_param(str(key), spec)
        if name is None:
            raise UserError(f"unknown parameter: --{key}", code="PARAMETER_UNKNOWN", details={"parameter": str(key)})
        ptype = spec[name].type
        if ptype == "boolean":
            out[name] = _parse_bool(value, param=name)
        elif ptype == "number":
            out[name] = _parse_number(value, param=name)
        elif ptype == "array":
            out[name] = _split_array(value)
        else:
            if isinstance(value, (list, tuple)):
                value = value[-1] if value else ""
            out[name] = str(value)

    missing = [n for n, p in spec.items() if p.required and n not in out]
    if missing:
        raise UserError(
            f"missing required parameter(s): {', '.join('--' + m for m in missing)}",
            code="PARAMETER_MISSING",
            details={"missing": missing},
        )
    for n, p in spec.items():
        if n not in out and p.default is not None:
            out[n] = list(p.default) if isinstance(p.default, (list, tuple)) else p.default
    return out


def bind_arguments(spec: Mapping[str, ParameterSpec], tokens: Sequence[str]) -> BoundArguments:
    """把 Command 的参数 token 绑定到 schema。"""

    raw: Dict[str, Any] = {}
    positional: List[str] = []
    i = 0
    toks = list(tokens)
    while i < len(toks):
        tok = toks[i]
        i += 1
        if tok == "--":
            positional.extend(toks[i:])
            break
        if not tok.startswith("--") or len(tok) == 2:
            positional.append(tok)
            continue
        flag, eq, inline_value = tok[2:].partition("=")
        name = _resolve_param(flag, spec)
        if name is None and flag.startswith("no-") and not eq:
            negated = _resolve_param(flag[3:], spec)
            if negated is not None and spec[negated].type == "boolean":
                raw[negated] = False
                continue
        if name is None:
            raise UserError(f"unknown parameter: --{flag}", code="PARAMETER_UNKNOWN", details={"parameter": flag})

        ptype = spec[name].type
        if eq:
            value: Any = inline_value
        elif ptype == "boolean":
            if i < len(toks) and toks[i].lower() in _TRUE | _FALSE:
                value = toks[i]
                i += 1
            else:
                value = True
        else:
            if i >= len(toks) or toks[i].startswith("--"):
                raise UserError(f"parameter --{flag} expects a value", code="PARAMETER_INVALID", details={"parameter": flag})
            value = toks[i]
            i += 1

        if ptype == "array":
            raw.setdefault(name, []).append(value)
        else:
            raw[name] = value

    return BoundArguments(parameters=coerce_parameters(spec, raw), input=" ".join(positional))


__all__ = [
    "BoundArguments",
    "InvocationLine",
    "bind_arguments",
    "coerce_parameters",
    "parse_invocation_line",
]
