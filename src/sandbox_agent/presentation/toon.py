"""Compact text rendering of JSON-like data for prompt context.

Mappings render as ``key: value`` lines, nested values are indented two
spaces per level, plain lists render as ``- item`` bullets and lists of
objects that share one key set render as a table::

    actions[2]{op,path}:
      write, a.txt
      delete, b.txt
"""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, List, Mapping, Sequence


def to_toon(data: Any, indent_level: int = 0) -> str:
    indent = "  " * indent_level
    if data is None or isinstance(data, (bool, int, float, str)):
        return _scalar(data)
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Mapping):
        return _render_mapping(data, indent_level)
    if isinstance(data, Sequence):
        items = list(data)
        if not items:
            return "[]"
        keys = _uniform_keys(items)
        if keys:
            header = f"[{len(items)}]{{{','.join(keys)}}}:"
            rows = [", ".join(_cell(item.get(k)) for k in keys) for item in items]
            return header + "".join(f"\n{indent}  {row}" for row in rows)
        lines = []
        for item in items:
            lines.append(f"{indent}- {to_toon(item, indent_level + 1).lstrip()}")
        return "\n".join(lines)
    return _scalar(str(data))


def _render_mapping(data: Mapping[str, Any], indent_level: int) -> str:
    indent = "  " * indent_level
    lines: List[str] = []
    for key, value in data.items():
        rendered = to_toon(value, indent_level + 1)
        if isinstance(value, Mapping) and value:
            lines.append(f"{indent}{key}:\n{rendered}")
        elif _is_list(value) and value:
            if rendered.startswith("["):
                lines.append(f"{indent}{key}{rendered}")
            else:
                lines.append(f"{indent}{key}:\n{rendered}")
        else:
            lines.append(f"{indent}{key}: {rendered if rendered else '{}'}")
    return "\n".join(lines)


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _uniform_keys(items: List[Any]) -> List[str]:
    first = items[0]
    if not isinstance(first, Mapping) or not first:
        return []
    keys = [str(k) for k in first.keys()]
    wanted = sorted(keys)
    for item in items:
        if not isinstance(item, Mapping) or sorted(str(k) for k in item.keys()) != wanted:
            return []
    return keys


def _scalar(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _cell(value: Any) -> str:
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if value is None or isinstance(value, bool):
        return json.dumps(value)
    return str(value).replace(",", "\\,")
