"""Helpers mapping free-form answers onto canonical option values."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .catalog import FieldSpec, InputMode

_WHITESPACE_RE = re.compile(r"\s+")
_MULTI_SPLIT_RE = re.compile(r"[,，、;；\n\r]+")


def normalize_alias(text: Any) -> str:
    """Lower-case ``text`` and strip every whitespace character."""

    if text is None:
        return ""
    return _WHITESPACE_RE.sub("", str(text)).lower()


def build_alias_table(*option_groups: Iterable[Any]) -> Dict[str, str]:
    """Map normalised labels and values to canonical values.

    Groups are consulted in order and the first alias registered wins, so
    callers pass provider options before static catalog options.
    """

    table: Dict[str, str] = {}
    for options in option_groups:
        for option in options or ():
            value = str(getattr(option, "value", "") or "").strip()
            if not value:
                continue
            label = getattr(option, "label", None)
            for alias in (normalize_alias(label), normalize_alias(value)):
                if alias and alias not in table:
                    table[alias] = value
    return table


def split_multi(raw: Any) -> List[str]:
    """Split a multi-select answer into trimmed, de-duplicated parts."""

    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        parts: List[str] = []
        for item in raw:
            parts.extend(split_multi(item))
    else:
        parts = [part.strip() for part in _MULTI_SPLIT_RE.split(stringify_value(raw))]
    return dedupe([part for part in parts if part])


def dedupe(values: Sequence[str]) -> List[str]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(stringify_value(item) for item in value if item is not None)
    return str(value).strip()


def canonicalize(field: FieldSpec, raw: Any, alias_table: Dict[str, str]) -> Optional[str]:
    """Resolve ``raw`` to the stored slot value for ``field``.

    Returns ``None`` when nothing usable remains, including literals that do
    not match any option of a fully enumerated field.
    """

    if field.input_mode is InputMode.SELECT_MULTI:
        resolved: List[str] = []
        for part in split_multi(raw):
            value = _map_scalar(field, part, alias_table)
            if value:
                resolved.append(value)
        resolved = dedupe(resolved)
        return ",".join(resolved) if resolved else None

    text = stringify_value(raw)
    if not text:
        return None
    return _map_scalar(field, text, alias_table)


def _map_scalar(field: FieldSpec, text: str, alias_table: Dict[str, str]) -> Optional[str]:
    mapped = alias_table.get(normalize_alias(text))
    if mapped is not None:
        return mapped
    if field.is_fully_enumerated:
        return None
    return text


__all__ = [
    "build_alias_table",
    "canonicalize",
    "dedupe",
    "normalize_alias",
    "split_multi",
    "stringify_value",
]
