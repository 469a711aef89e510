"""A small text template engine for ``{{.Field}}`` style substitutions."""

from __future__ import annotations

import json
import re
from typing import Any

_FIELD_CHAIN = re.compile(r"(?:\.[A-Za-z_][A-Za-z0-9_]*)+")
_DQUOTED = re.compile(r'"(?:[^"\\]|\\.)*"')
_SPACE = " \t\r\n"
_NO_VALUE = "<no value>"


class TemplateError(ValueError):
    """Raised when a template cannot be parsed or executed."""


def _snake(name: str) -> str:
    s = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    s = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s)
    return s.lower()


def _field(value: Any, name: str) -> Any:
    if value is None:
        raise TemplateError(f"nil data; no entry for key {name!r}")
    if isinstance(value, dict):
        return value.get(name)
    for attr in (name, _snake(name)):
        if hasattr(value, attr):
            return getattr(value, attr)
    raise TemplateError(f"can't evaluate field {name} in type {type(value).__name__}")


def _format(value: Any) -> str:
    if value is None:
        return _NO_VALUE
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format(v) for v in value) + "]"
    if isinstance(value, dict):
        items = " ".join(f"{_format(k)}:{_format(value[k])}" for k in sorted(value, key=str))
        return "map[" + items + "]"
    return str(value)


def _evaluate(expr: str, args: Any) -> str:
    if expr.startswith("/*") and expr.endswith("*/"):
        return ""
    if not expr:
        raise TemplateError("missing value for command")
    if expr == ".":
        return _format(args)
    if _FIELD_CHAIN.fullmatch(expr):
        value = args
        for name in expr[1:].split("."):
            value = _field(value, name)
        return _format(value)
    if _DQUOTED.fullmatch(expr):
        return json.loads(expr)
    if len(expr) >= 2 and expr[0] == "`" and expr[-1] == "`" and "`" not in expr[1:-1]:
        return expr[1:-1]
    raise TemplateError(f"unsupported action {expr!r}")


def execute(tmpl: str, args: Any) -> bytes:
    """Render ``tmpl`` with ``args`` (a mapping or an object) and return the bytes."""
    out: list[str] = []
    pos = 0
    trim_next = False
    while True:
        start = tmpl.find("{{", pos)
        text = tmpl[pos:] if start < 0 else tmpl[pos:start]
        if trim_next:
            text = text.lstrip(_SPACE)
            trim_next = False
        if start < 0:
            out.append(text)
            break
        end = tmpl.find("}}", start + 2)
        if end < 0:
            raise TemplateError("unclosed action")
        inner = tmpl[start + 2:end]
        if len(inner) >= 2 and inner[0] == "-" and inner[1] in _SPACE:
            text = text.rstrip(_SPACE)
            inner = inner[2:]
        if len(inner) >= 2 and inner[-1] == "-" and inner[-2] in _SPACE:
            trim_next = True
            inner = inner[:-2]
        out.append(text)
        out.append(_evaluate(inner.strip(_SPACE), args))
        pos = end + 2
    return "".join(out).encode("utf-8")