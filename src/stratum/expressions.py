"""Attribute expressions: ``${...}`` interpolation, references and resolution.

Configuration values are parsed into plain data mixed with expression
objects:

- ``Symbol``: a reference as written, scoped to the module it appears in
  (``var.cidr``, ``aws_vpc.main.id``, ``module.net.subnet_ids[0]``).
- ``Reference``: a Symbol after scope resolution, pointing at an attribute of
  a node in the graph.
- ``Template``: a string mixing literal text with Symbols/References.

A string that is exactly one interpolation parses to the bare expression so
the referenced value keeps its type.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .models import UNKNOWN, Address

_INTERPOLATION = re.compile(r"\$\$\{|\$\{([^}]*)\}")
_SEGMENT = re.compile(r"\[(\d+)\]|([^.\[\]]+)")
_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")

PathSegment = str | int


@dataclass(frozen=True)
class Symbol:
    """An unresolved reference exactly as written in configuration."""

    segments: tuple[PathSegment, ...]
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Reference:
    """Deferred reference to an attribute (path) of another node."""

    address: Address
    path: tuple[PathSegment, ...] = ()

    def __str__(self) -> str:
        text = str(self.address)
        for seg in self.path:
            text += f"[{seg}]" if isinstance(seg, int) else f".{seg}"
        return text


@dataclass(frozen=True)
class Template:
    """String interpolation: literal text parts mixed with expressions."""

    parts: tuple[Any, ...]

    def __str__(self) -> str:
        return "".join(p if isinstance(p, str) else f"${{{p}}}" for p in self.parts)


def parse_symbol(text: str) -> Symbol:
    """Parse reference text like ``module.net.subnet_ids[0]``."""
    text = text.strip()
    segments: list[PathSegment] = []
    pos = 0
    for match in _SEGMENT.finditer(text):
        between = text[pos : match.start()]
        if between not in ("", "."):
            raise ValueError(f"Invalid reference syntax: {text!r}")
        pos = match.end()
        if match.group(1) is not None:
            segments.append(int(match.group(1)))
        else:
            segments.append(match.group(2))
    if pos != len(text) or not segments:
        raise ValueError(f"Invalid reference syntax: {text!r}")
    head = segments[0]
    if not isinstance(head, str) or not _IDENT.match(head):
        raise ValueError(f"Invalid reference syntax: {text!r}")
    return Symbol(segments=tuple(segments), text=text)


def parse_string(value: str) -> Any:
    """Parse one configuration string into a literal, Symbol or Template."""
    parts: list[Any] = []
    literal = ""
    pos = 0
    for match in _INTERPOLATION.finditer(value):
        literal += value[pos : match.start()]
        pos = match.end()
        if match.group(0) == "$${":
            literal += "${"
            continue
        if literal:
            parts.append(literal)
            literal = ""
        parts.append(parse_symbol(match.group(1)))
    literal += value[pos:]
    if literal:
        parts.append(literal)

    if not any(isinstance(p, Symbol) for p in parts):
        return "".join(parts)
    if len(parts) == 1:
        return parts[0]
    return Template(parts=tuple(parts))


def parse_value(value: Any) -> Any:
    """Recursively parse interpolations in a configuration value."""
    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    return value


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _finish_template(parts: list[Any]) -> Any:
    """Collapse a template whose parts are all concrete into a string."""
    flat: list[Any] = []
    for p in parts:
        if isinstance(p, Template):
            flat.extend(p.parts)
        else:
            flat.append(p)
    parts = flat
    if any(p is UNKNOWN for p in parts):
        return UNKNOWN
    if all(not isinstance(p, Symbol | Reference) for p in parts):
        return "".join(p if isinstance(p, str) else _render(p) for p in parts)
    merged: list[Any] = []
    for p in parts:
        if not isinstance(p, Symbol | Reference):
            p = p if isinstance(p, str) else _render(p)
            if merged and isinstance(merged[-1], str):
                merged[-1] += p
                continue
        merged.append(p)
    return Template(parts=tuple(merged))


def substitute(value: Any, fn: Callable[[Any], Any], kind: type) -> Any:
    """
    Replace every expression of type ``kind`` inside value with ``fn(expr)``.

    Templates whose parts become concrete are rendered to strings.
    """
    if isinstance(value, kind):
        return fn(value)
    if isinstance(value, Template):
        return _finish_template(
            [fn(p) if isinstance(p, kind) else p for p in value.parts]
        )
    if isinstance(value, dict):
        return {k: substitute(v, fn, kind) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, fn, kind) for v in value]
    return value


def iter_expressions(value: Any, kind: type) -> list[Any]:
    """Collect every expression of type ``kind`` found inside value."""
    found: list[Any] = []

    def walk(v: Any) -> None:
        if isinstance(v, kind):
            found.append(v)
        elif isinstance(v, Template):
            for p in v.parts:
                walk(p)
        elif isinstance(v, dict):
            for item in v.values():
                walk(item)
        elif isinstance(v, list):
            for item in v:
                walk(item)

    walk(value)
    return found


def referenced_addresses(value: Any) -> set[Address]:
    """Addresses of all nodes referenced inside value."""
    return {ref.address for ref in iter_expressions(value, Reference)}


def lookup_path(value: Any, path: tuple[PathSegment, ...]) -> Any:
    """
    Walk into nested dicts/lists along path.

    Raises:
        KeyError: If a segment does not exist
    """
    current = value
    for seg in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(seg, int):
            if not isinstance(current, list) or seg >= len(current):
                raise KeyError(seg)
            current = current[seg]
        else:
            if not isinstance(current, dict) or seg not in current:
                raise KeyError(seg)
            current = current[seg]
    return current


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every Reference in value with ``lookup(ref)`` (may be UNKNOWN)."""
    return substitute(value, lookup, Reference)


def is_deferred(value: Any) -> bool:
    """True if value still contains expressions."""
    return bool(iter_expressions(value, Symbol) or iter_expressions(value, Reference))


def to_text(value: Any) -> Any:
    """Render expressions back to ``${...}`` text (for display)."""
    if isinstance(value, Symbol | Reference):
        return f"${{{value}}}"
    if isinstance(value, Template):
        return str(value)
    if isinstance(value, dict):
        return {k: to_text(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_text(v) for v in value]
    return value
