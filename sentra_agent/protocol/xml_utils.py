"""Small XML helpers for the Sentra wire protocol.

The protocol is a one-way-biased view: arbitrary payloads are serialized
freely into nested tags, while parsing only ever targets a fixed set of
known tags.  Regex extraction is deliberate; model output is rarely
well-formed enough for a real XML parser.
"""

from __future__ import annotations

import json
import re
from typing import Any

# Bulk fields that duplicate ``text`` / ``summary`` and only bloat the context.
USER_QUESTION_FILTER_KEYS = frozenset({"segments", "images", "videos", "files", "records", "raw"})

_TAG_INVALID_RE = re.compile(r"[^A-Za-z0-9_.\-]")
_FILE_PATH_RE = re.compile(
    r"^(?:file://\S+|[A-Za-z]:[\\/][^<>\"|?*\n]+|/[^<>\"|?*\n]+)\.[A-Za-z0-9]{1,8}$"
)


def escape_xml(text: str) -> str:
    """Escape ``&``, ``<`` and ``>`` (quotes stay as-is inside element text)."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def unescape_html(text: str) -> str:
    """Reverse the HTML entities models like to emit inside text tags."""
    if not text:
        return text
    return (
        text.replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&quot;", '"')
        .replace("&apos;", "'")
        .replace("&#39;", "'")
        .replace("&amp;", "&")
    )


def sanitize_tag(name: Any) -> str:
    """Turn an arbitrary dict key into a usable tag name."""
    tag = _TAG_INVALID_RE.sub("_", str(name)) or "_"
    if not (tag[0].isalpha() or tag[0] == "_"):
        tag = f"_{tag}"
    return tag


def value_to_xml_string(value: Any, indent: int = 0) -> str:
    """Render a scalar (or an opaque compound) as escaped element text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return escape_xml(value)
    try:
        return escape_xml(json.dumps(value, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        return escape_xml(str(value))


def json_to_xml_lines(
    value: Any,
    indent: int = 0,
    depth: int = 0,
    max_depth: int = 6,
    exclude_keys: frozenset[str] | set[str] = frozenset(),
    _seen: set[int] | None = None,
) -> list[str]:
    """Recursively serialize *value* into indented XML lines.

    Dict keys become tags, list items become ``<item index="i">`` tags.
    Anything nested deeper than *max_depth* is emitted as compact JSON text;
    reference cycles are cut with ``[circular]``.
    ``exclude_keys`` only applies to the top level.
    """
    seen = _seen if _seen is not None else {id(value)}
    pad = "  " * indent
    lines: list[str] = []

    if isinstance(value, dict):
        items = [
            (k, v) for k, v in value.items()
            if not (depth == 0 and k in exclude_keys)
        ]
    elif isinstance(value, (list, tuple)):
        items = [(i, v) for i, v in enumerate(value)]
    else:
        return [f"{pad}{value_to_xml_string(value)}"]

    for key, child in items:
        if isinstance(value, dict):
            open_tag, close_tag = f"<{sanitize_tag(key)}>", f"</{sanitize_tag(key)}>"
        else:
            open_tag, close_tag = f'<item index="{key}">', "</item>"

        if not isinstance(child, (dict, list, tuple)):
            lines.append(f"{pad}{open_tag}{value_to_xml_string(child)}{close_tag}")
            continue
        if id(child) in seen:
            lines.append(f"{pad}{open_tag}[circular]{close_tag}")
            continue
        if depth + 1 >= max_depth:
            lines.append(f"{pad}{open_tag}{value_to_xml_string(child)}{close_tag}")
            continue
        if not child:
            lines.append(f"{pad}{open_tag}{close_tag}")
            continue

        seen.add(id(child))
        lines.append(f"{pad}{open_tag}")
        lines.extend(json_to_xml_lines(child, indent + 1, depth + 1, max_depth, exclude_keys, seen))
        lines.append(f"{pad}{close_tag}")
        seen.discard(id(child))

    return lines


def _tag_pattern(tag: str) -> re.Pattern[str]:
    name = re.escape(tag)
    return re.compile(rf"<{name}(?:\s[^>]*)?>(.*?)</{name}>", re.DOTALL)


def extract_xml_tag(text: str | None, tag: str) -> str | None:
    """Return the inner content of the first ``<tag>`` element, or None."""
    if not text:
        return None
    match = _tag_pattern(tag).search(text)
    return match.group(1) if match else None


def extract_all_xml_tags(text: str | None, tag: str) -> list[str]:
    """Return the inner content of every ``<tag>`` element in order."""
    if not text:
        return []
    return [m.group(1) for m in _tag_pattern(tag).finditer(text)]


def extract_files_from_content(value: Any, max_depth: int = 12) -> list[dict[str, str]]:
    """Collect file-path-shaped strings anywhere in *value*.

    Returns ``[{"key": dotted.path, "path": value}]`` without duplicates.
    """
    found: list[dict[str, str]] = []
    seen_paths: set[str] = set()

    def _walk(node: Any, path: str, depth: int) -> None:
        if depth > max_depth:
            return
        if isinstance(node, dict):
            for k, v in node.items():
                _walk(v, f"{path}.{k}" if path else str(k), depth + 1)
        elif isinstance(node, (list, tuple)):
            for i, v in enumerate(node):
                _walk(v, f"{path}[{i}]", depth + 1)
        elif isinstance(node, str):
            candidate = node.strip()
            if candidate not in seen_paths and _FILE_PATH_RE.match(candidate):
                seen_paths.add(candidate)
                found.append({"key": path or "value", "path": candidate})

    _walk(value, "", 0)
    return found
