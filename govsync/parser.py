"""
Frontmatter parser for governance repository documents.

Extracts structured records from markdown files with a leading frontmatter
block. Used by the sync pipeline and by the groups data source.

Frontmatter Format (every field optional):
---
id: stable-id
type: agreement              # agreement | policy | proposal | other
title: Operating Agreement
status: active               # draft | active | superseded | retired
effective_from: 2024-01-01
effective_to: 2025-01-01
enacted_by: 0xabc...         # proposal reference
domain: [dao-core, treasury]
scope:
  - 0x1234...                # address
  - 12.1.3                   # hat
  - allocation-cell          # group
related:
  - authorized_by: charter
  - type: implements
    target: principles
---

The metadata grammar is deliberately small: flat ``key: value`` pairs,
inline lists (``[a, b]``, items may be one-level ``{k: v}`` mappings), block
lists, list entries written as ``- key: value`` with more-indented
continuation lines, and ``|`` / ``>`` block scalars. Anything else is
ignored. Parsing never raises; missing fields fall back to defaults.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from .models import (
    DOCUMENT_STATUSES,
    DOCUMENT_TYPES,
    GROUP_STATUSES,
    RELATIONSHIP_TYPES,
    GroupRecord,
    ParsedDocument,
    RelationshipRef,
    ScopeEntry,
)
from .source_config import DEFAULT_RULES, SyncRules

__all__ = [
    "extract_frontmatter",
    "parse_document",
    "parse_group_record",
    "title_from_slug",
]

FRONTMATTER_RE = re.compile(
    r"\A\ufeff?---[ \t]*\r?\n(?P<body>.*?)^---[ \t]*\r?$",
    re.DOTALL | re.MULTILINE,
)
KEY_RE = re.compile(r"^([A-Za-z_][\w-]*):\s*(.*)$")
# List entries need whitespace after the colon so "- https://x" stays a string.
ITEM_KEY_RE = re.compile(r"^([A-Za-z_][\w-]*):(?:\s+(.*))?$")
INLINE_REL_RE = re.compile(r"^(\w+):\s*(.+)$")
BLOCK_SCALARS = {"|", "|-", "|+", ">", ">-", ">+"}


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def parse_document(
    path: str,
    content: str,
    rules: SyncRules = DEFAULT_RULES,
) -> Optional[ParsedDocument]:
    """
    Parse a governance document into a structured record.

    Args:
        path: Repository-relative path (e.g. "agreements/operating-agreement.md")
        content: Raw markdown content
        rules: Exclusion and slug rules for the corpus

    Returns:
        ParsedDocument, or None when the file is not indexable (excluded path
        or no frontmatter block).
    """
    if rules.is_excluded(path):
        return None

    fm = extract_frontmatter(content)
    if fm is None:
        return None

    slug = rules.slug_for(path)

    return ParsedDocument(
        id=_scalar(fm.get("id")) or slug,
        slug=slug,
        type=_choice(fm.get("type"), DOCUMENT_TYPES, "other"),
        title=_scalar(fm.get("title")) or title_from_slug(slug),
        status=_choice(fm.get("status"), DOCUMENT_STATUSES, "draft"),
        effective_from=_scalar(_first(fm, "effective_from", "effectiveFrom")),
        effective_to=_scalar(_first(fm, "effective_to", "effectiveTo")),
        enacted_by=_scalar(_first(fm, "enacted_by", "enactedBy")),
        domains=_normalise_domains(_first(fm, "domain", "domains")),
        relationships=_normalise_relationships(_first(fm, "related", "relationships")),
        scope=_normalise_scope(fm.get("scope")),
    )


def parse_group_record(group_id: str, content: str) -> GroupRecord:
    """
    Parse a group/cell file from the knowledge-base groups directory.

    Missing frontmatter yields an inactive group named after its id.
    """
    fm = extract_frontmatter(content) or {}

    status = _scalar(fm.get("status"))
    if status not in GROUP_STATUSES:
        status = "inactive"

    return GroupRecord(
        id=group_id,
        name=_scalar(fm.get("title")) or _scalar(fm.get("name")) or group_id,
        status=status,
        description=_scalar(fm.get("description")),
        mandate=_scalar(fm.get("mandate")),
        linked_hats=_string_list(fm.get("hats")),
        url=_scalar(fm.get("url")),
    )


def extract_frontmatter(content: str) -> Optional[dict[str, Any]]:
    """
    Extract the leading frontmatter block.

    Returns:
        Dict of parsed fields, or None if the content has no block.
    """
    match = FRONTMATTER_RE.match(content)
    if not match:
        return None
    return _parse_metadata(match.group("body"))


def title_from_slug(slug: str) -> str:
    """operating-agreement -> Operating Agreement"""
    words = [w for w in slug.split("-") if w]
    return " ".join(w[0].upper() + w[1:] for w in words)


# ---------------------------------------------------------------------------
# Metadata grammar
# ---------------------------------------------------------------------------


def _parse_metadata(body: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    current_key: str | None = None
    mode: str | None = None  # "list" | "block"
    block_style = "|"
    block_lines: list[str] = []
    current_item: dict[str, str] | None = None

    def close_block() -> None:
        if mode == "block" and current_key is not None:
            result[current_key] = _fold_block(block_style, block_lines)

    for raw_line in body.splitlines():
        line = raw_line.rstrip("\r")
        stripped = line.strip()
        indent = len(line) - len(line.lstrip())

        if not stripped:
            if mode == "block":
                block_lines.append("")
            continue

        if mode == "block" and indent > 0:
            block_lines.append(stripped)
            continue

        if stripped.startswith("#"):
            continue

        if indent == 0:
            close_block()
            mode = None
            current_item = None
            match = KEY_RE.match(stripped)
            if not match:
                current_key = None
                continue

            current_key, value = match.group(1), _strip_comment(match.group(2).strip())
            if value == "":
                result[current_key] = []
                mode = "list"
            elif value in BLOCK_SCALARS:
                mode = "block"
                block_style = value[0]
                block_lines = []
            elif value.startswith("[") and value.endswith("]"):
                result[current_key] = _parse_inline_list(value[1:-1])
            else:
                result[current_key] = _unquote(value)
            continue

        # Indented line: only meaningful inside a block list.
        if mode != "list" or current_key is None:
            continue
        items = result[current_key]

        if stripped == "-" or stripped.startswith("- "):
            entry = _strip_comment(stripped[1:].strip())
            current_item = None
            if not entry:
                continue
            if entry.startswith("{") and entry.endswith("}"):
                items.append(_parse_flow_mapping(entry[1:-1]))
                continue
            item_match = ITEM_KEY_RE.match(entry)
            if item_match:
                current_item = {item_match.group(1): _unquote((item_match.group(2) or "").strip())}
                items.append(current_item)
            else:
                items.append(_unquote(entry))
            continue

        item_match = ITEM_KEY_RE.match(_strip_comment(stripped))
        if current_item is not None and item_match:
            current_item[item_match.group(1)] = _unquote((item_match.group(2) or "").strip())

    close_block()
    return result


def _fold_block(style: str, lines: list[str]) -> str:
    if style == ">":
        return " ".join(line for line in lines if line).strip()
    return "\n".join(lines).strip("\n")


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are outside quotes and braces."""
    parts: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}" and depth:
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    return parts


def _parse_inline_list(text: str) -> list[Any]:
    items: list[Any] = []
    for part in _split_top_level(text):
        part = part.strip()
        if not part:
            continue
        if part.startswith("{") and part.endswith("}"):
            items.append(_parse_flow_mapping(part[1:-1]))
        else:
            value = _unquote(part)
            if value:
                items.append(value)
    return items


def _parse_flow_mapping(text: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for part in _split_top_level(text):
        key, sep, value = part.partition(":")
        key = _unquote(key.strip())
        if sep and key:
            mapping[key] = _unquote(value.strip())
    return mapping


def _strip_comment(value: str) -> str:
    if value[:1] in ("'", '"'):
        return value
    head, sep, _ = value.partition(" #")
    return head.rstrip() if sep else value


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _first(fm: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in fm:
            return fm[key]
    return None


def _scalar(raw: Any) -> str | None:
    if isinstance(raw, str):
        raw = raw.strip()
        return raw or None
    return None


def _choice(raw: Any, allowed: tuple[str, ...], default: str) -> str:
    value = _scalar(raw)
    if value is None:
        return default
    value = value.lower()
    return value if value in allowed else default


def _as_list(raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    return [raw]


def _string_list(raw: Any) -> list[str]:
    values: list[str] = []
    for item in _as_list(raw):
        value = _scalar(item)
        if value and value not in values:
            values.append(value)
    return values


def _normalise_domains(raw: Any) -> list[str]:
    return _string_list(raw)


def _normalise_relationships(raw: Any) -> list[RelationshipRef]:
    refs: list[RelationshipRef] = []
    for item in _as_list(raw):
        rel_type: str | None = None
        target: str | None = None

        if isinstance(item, str):
            match = INLINE_REL_RE.match(item.strip())
            if match:
                rel_type, target = match.group(1), _unquote(match.group(2).strip())
        elif isinstance(item, dict):
            if "type" in item and "target" in item:
                rel_type, target = item["type"], item["target"]
            elif len(item) == 1:
                rel_type, target = next(iter(item.items()))

        rel_type = _scalar(rel_type)
        target = _scalar(target)
        if not rel_type or not target or rel_type not in RELATIONSHIP_TYPES:
            continue
        ref = RelationshipRef(type=rel_type, target_slug=target)
        if ref not in refs:
            refs.append(ref)
    return refs


def _normalise_scope(raw: Any) -> list[ScopeEntry]:
    entries: list[ScopeEntry] = []
    for token in _string_list(raw):
        if token.lower().startswith("0x"):
            entry = ScopeEntry(entity_type="address", entity_id=token)
        elif token[0].isdigit():
            entry = ScopeEntry(entity_type="hat", entity_id=token)
        else:
            entry = ScopeEntry(entity_type="group", entity_id=token)
        if entry not in entries:
            entries.append(entry)
    return entries
